from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional

from codeautopsy.errors import CollaboratorError, FixGenerationError
from codeautopsy.llm.chat_client import ChatClient
from codeautopsy.llm.parsing import extract_code_block, extract_json_object
from codeautopsy.models import Diagnosis, FixResult, RetrievedFile


COMMON_ERROR_KINDS = ("SyntaxError", "IndentationError", "ImportError", "ModuleNotFoundError")
COMPLEX_ERROR_KINDS = ("TypeError", "ReferenceError", "NullPointerException", "TemplateError", "LinkerError")
# Files longer than this go to the stronger model.
COMPLEX_FILE_LINES = 200


@dataclass
class FixValidation:
    is_valid: bool
    reason: Optional[str] = None
    syntax_valid: bool = False
    changes_are_minimal: bool = False
    introduces_new_issues: bool = False
    potential_side_effects: List[str] = field(default_factory=list)
    source: str = "basic"


def basic_validate(original: str, fixed: str) -> FixValidation:
    if not fixed or not fixed.strip():
        return FixValidation(is_valid=False, reason="Fixed code is empty")
    if original.strip() == fixed.strip():
        return FixValidation(is_valid=False, reason="Fixed code is identical to original")
    original_lines = len(original.split("\n"))
    line_delta = abs(len(fixed.split("\n")) - original_lines)
    if line_delta > original_lines * 0.5:
        return FixValidation(is_valid=False, reason=f"Too many lines changed: {line_delta} lines difference")
    # Nothing is parsed or compiled here.
    return FixValidation(is_valid=True, syntax_valid=True)


def change_ratio(original: str, fixed: str) -> float:
    """Position-wise differing characters plus the length delta, over the original length."""
    shorter = min(len(original), len(fixed))
    diff = sum(1 for i in range(shorter) if original[i] != fixed[i])
    diff += abs(len(original) - len(fixed))
    return diff / max(len(original), 1)


def fix_confidence(
    *,
    original: str,
    fixed: str,
    validation: FixValidation,
    error_kind: Optional[str],
    line_number: Optional[int],
) -> float:
    c = 0.5
    ratio = change_ratio(original, fixed)
    if ratio < 0.05:
        c += 0.2
    elif ratio < 0.1:
        c += 0.15
    elif ratio < 0.2:
        c += 0.1

    if validation.is_valid:
        c += 0.15
    if validation.syntax_valid:
        c += 0.05
    if validation.changes_are_minimal:
        c += 0.1
    if error_kind in COMMON_ERROR_KINDS:
        c += 0.1
    if line_number:
        c += 0.05

    c -= 0.1 * len(validation.potential_side_effects)
    if validation.introduces_new_issues:
        c -= 0.2
    return max(0.0, min(1.0, round(c, 4)))


def diff_summary(original: str, fixed: str, *, max_changes: int = 10) -> str:
    a = original.split("\n")
    b = fixed.split("\n")
    changes: List[str] = []
    for i in range(max(len(a), len(b))):
        old = a[i] if i < len(a) else None
        new = b[i] if i < len(b) else None
        if old == new:
            continue
        if old is not None and new is None:
            changes.append(f"- Line {i + 1}: Removed: `{old.strip()[:50]}`")
        elif old is None and new is not None:
            changes.append(f"+ Line {i + 1}: Added: `{new.strip()[:50]}`")
        else:
            changes.append(f"~ Line {i + 1}: Changed")
    if not changes:
        return "No visible changes"
    if len(changes) > max_changes:
        return "\n".join(changes[:5]) + f"\n... and {len(changes) - 5} more changes"
    return "\n".join(changes)


def is_complex_error(error_kind: Optional[str], code: str) -> bool:
    if error_kind and any(k in error_kind for k in COMPLEX_ERROR_KINDS):
        return True
    return len(code.split("\n")) > COMPLEX_FILE_LINES


def build_fix_prompt(diagnosis: Diagnosis, original: RetrievedFile) -> str:
    lang = diagnosis.language.value if diagnosis.language else "text"
    return (
        "Fix the error below with the smallest possible change.\n\n"
        f"- File: `{diagnosis.file_path}`\n"
        f"- Line: {diagnosis.line_number or 'Unknown'}\n"
        f"- Error kind: {diagnosis.error_kind or 'Unknown'}\n"
        f"- Error message: {diagnosis.message or ''}\n"
        f"- Language: {lang}\n\n"
        f"Original file:\n```{lang}\n{original.content}\n```\n\n"
        "Rules: fix only this error; keep comments, formatting and style untouched; do not add comments "
        "about the fix; output the COMPLETE file in a single fenced code block and nothing else."
    )


def build_validation_prompt(original: str, fixed: str, language: str, error_message: Optional[str]) -> str:
    return (
        f"A {language} file was changed to fix this error: {error_message or 'unknown'}\n\n"
        f"Original:\n```\n{original}\n```\n\nFixed:\n```\n{fixed}\n```\n\n"
        "Respond ONLY with JSON: {\"is_valid\": bool, \"syntax_valid\": bool, \"addresses_error\": bool, "
        "\"changes_are_minimal\": bool, \"introduces_new_issues\": bool, \"potential_side_effects\": [str]}"
    )


@dataclass(frozen=True)
class LLMFixGenerator:
    """
    Fix generation collaborator: the model returns the whole fixed file, which is then checked locally
    (and optionally by a second model pass) and scored.
    """

    client: ChatClient
    model: str
    complex_model: Optional[str] = None
    max_tokens: int = 4096
    ai_validation: bool = False

    def generate_fix(self, diagnosis: Diagnosis, original: RetrievedFile) -> FixResult:
        model = self.model
        if self.complex_model and is_complex_error(diagnosis.error_kind, original.content):
            model = self.complex_model

        t0 = time.time()
        try:
            text = self.client.chat(
                model=model,
                messages=[{"role": "user", "content": build_fix_prompt(diagnosis, original)}],
                max_tokens=self.max_tokens,
                temperature=0.0,
            )
        except CollaboratorError as e:
            raise FixGenerationError(str(e)) from e
        latency_ms = int((time.time() - t0) * 1000)

        fixed = extract_code_block(text, diagnosis.language.value)
        validation = self._validate(original.content, fixed, diagnosis)
        return FixResult(
            success=validation.is_valid,
            fixed_content=fixed,
            confidence=fix_confidence(
                original=original.content,
                fixed=fixed,
                validation=validation,
                error_kind=diagnosis.error_kind,
                line_number=diagnosis.line_number,
            ),
            diff_summary=diff_summary(original.content, fixed),
            model=model,
            latency_ms=latency_ms,
            validation_passed=validation.is_valid,
            reason=validation.reason,
        )

    def _validate(self, original: str, fixed: str, diagnosis: Diagnosis) -> FixValidation:
        basic = basic_validate(original, fixed)
        if not basic.is_valid or not self.ai_validation:
            return basic
        try:
            text = self.client.chat(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": build_validation_prompt(original, fixed, diagnosis.language.value, diagnosis.message),
                    }
                ],
                max_tokens=1024,
                temperature=0.0,
            )
            data = extract_json_object(text)
        except (CollaboratorError, ValueError):
            # A broken second opinion is not a reason to drop the fix.
            return basic
        addresses = bool(data.get("addresses_error", True))
        side_effects = [str(s) for s in (data.get("potential_side_effects") or []) if s]
        return FixValidation(
            is_valid=bool(data.get("is_valid", True)) and addresses,
            reason=None if addresses else "Fix does not address the reported error",
            syntax_valid=bool(data.get("syntax_valid", False)),
            changes_are_minimal=bool(data.get("changes_are_minimal", False)),
            introduces_new_issues=bool(data.get("introduces_new_issues", False)),
            potential_side_effects=side_effects,
            source="ai",
        )


@dataclass(frozen=True)
class DisabledFixGenerator:
    """Stands in when no LLM is configured: every fix attempt fails, so events end FAILED with the reason."""

    reason: str = "no LLM configured (set CODEAUTOPSY_LLM_API_KEY)"

    def generate_fix(self, diagnosis: Diagnosis, original: RetrievedFile) -> FixResult:
        return FixResult(success=False, reason=self.reason)
