from __future__ import annotations

from typing import Optional

from codeautopsy.models import Diagnosis, FailureEvent
from codeautopsy.parsers.extractor import categorize_error


BRANCH_PREFIX = "autopsy/fix"
PR_LABELS = ["autopsy-fix", "automated-pr"]
ISSUE_LABELS = ["autopsy-analysis", "needs-review", "bug"]


def fix_branch_name(event: FailureEvent) -> str:
    # Deterministic per event, so a retried job reuses the branch it may already have pushed.
    return f"{BRANCH_PREFIX}-{event.id.replace('-', '')[:8]}-{event.commit_sha[:7]}"


def confidence_label(confidence: float) -> str:
    if confidence >= 0.9:
        return "Very High - This fix is highly likely to work"
    if confidence >= 0.8:
        return "High - Fix should work, review recommended"
    if confidence >= 0.7:
        return "Medium - Please review carefully"
    if confidence >= 0.5:
        return "Low - Extensive review required"
    return "Very Low - Manual verification essential"


def pr_title(diagnosis: Diagnosis) -> str:
    return f"[CodeAutopsy] Fix {diagnosis.error_kind or 'build error'} in {diagnosis.file_path}"


def issue_title(diagnosis: Diagnosis) -> str:
    return f"[CodeAutopsy] Build Failure: {diagnosis.error_kind or 'Error'} in {diagnosis.file_path}"


def pr_body(event: FailureEvent, diagnosis: Diagnosis, *, diff_summary: str, confidence: float) -> str:
    where = f" at line {diagnosis.line_number}" if diagnosis.line_number else ""
    lines = [
        "## CodeAutopsy Auto-Fix",
        "",
        f"Automated fix for the failed CI run `{event.run_id}` on `{event.branch}` ({event.commit_sha[:7]}).",
        "",
        "### Diagnosis",
        f"- **File:** `{diagnosis.file_path}`",
        f"- **Error:** {diagnosis.error_kind or 'Unknown'}{where}",
        f"- **Category:** {categorize_error(diagnosis.error_kind)}",
        f"- **Issue:** {diagnosis.message or 'n/a'}",
        "",
        "### Applied Fix",
        "```",
        diff_summary or "No visible changes",
        "```",
        "",
        "### Confidence",
        f"**{confidence * 100:.0f}%** - {confidence_label(confidence)}",
        "",
        "### Review Required",
        "This fix was generated automatically. Check that it addresses the original error, has no side "
        "effects and passes the test suite before merging.",
    ]
    if event.logs_url:
        lines += ["", f"[Build logs]({event.logs_url})"]
    return "\n".join(lines)


def issue_body(
    event: FailureEvent,
    diagnosis: Diagnosis,
    *,
    reason: str,
    diff_summary: Optional[str] = None,
    log_excerpt: Optional[str] = None,
) -> str:
    lines = [
        "## CodeAutopsy Analysis",
        "",
        f"CI run `{event.run_id}` on `{event.branch}` ({event.commit_sha[:7]}) failed.",
        "",
        "### Error Detected",
        f"- **File:** `{diagnosis.file_path}`",
        f"- **Error Type:** {diagnosis.error_kind or 'Unknown'}",
        f"- **Category:** {categorize_error(diagnosis.error_kind)}",
        f"- **Line:** {diagnosis.line_number or 'Unknown'}",
        f"- **Message:** {diagnosis.message or 'n/a'}",
        "",
        "### Auto-Fix Not Applied",
        reason,
    ]
    if diff_summary:
        lines += ["", "### Attempted Fix", "```", diff_summary, "```"]
    if log_excerpt:
        excerpt = log_excerpt if len(log_excerpt) <= 1000 else "...\n" + log_excerpt[-1000:]
        lines += ["", "### Build Log Excerpt", "```", excerpt, "```"]
    if event.logs_url:
        lines += ["", f"[Build logs]({event.logs_url})"]
    return "\n".join(lines)
