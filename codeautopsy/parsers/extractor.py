from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

from codeautopsy.models import ErrorSignature, Language
from codeautopsy.parsers.paths import normalize
from codeautopsy.parsers.patterns import rules_for


DedupKey = Tuple[Optional[str], Optional[int], Optional[str]]


def _dedup_key(sig: ErrorSignature) -> DedupKey:
    return (normalize(sig.file_path) or None, sig.line_number, sig.error_kind)


def extract_errors(log: Optional[str], language_hint: Language | str | None = None) -> List[ErrorSignature]:
    """
    Run the pattern library over a raw log.

    Signatures are deduplicated on (normalized path, line, kind), first occurrence wins, then ranked:
    file-bearing signatures before file-less ones, earlier log offset first.
    Overlapping matches from different rule sets are not merged unless their keys collide.
    """
    if not log:
        return []

    found: List[ErrorSignature] = []
    index: Dict[DedupKey, int] = {}
    for lang, rule in rules_for(language_hint):
        for m in rule.pattern.finditer(log):
            fields = rule.extract(m)
            sig = ErrorSignature(
                file_path=fields.get("file_path") or None,
                line_number=fields.get("line_number"),
                column=fields.get("column"),
                error_kind=fields.get("error_kind"),
                message=fields.get("message"),
                raw_match_offset=m.start(),
                raw_match_text=m.group(0),
                language=lang,
                extra=fields.get("extra") or {},
            )
            key = _dedup_key(sig)
            if key in index:
                # A later rule can still hit an earlier spot in the log; keep the earliest one.
                idx = index[key]
                if sig.raw_match_offset < found[idx].raw_match_offset:
                    found[idx] = sig
                continue
            index[key] = len(found)
            found.append(sig)

    # sorted() is stable, so equal keys keep rule order.
    return sorted(found, key=lambda s: (s.file_path is None, s.raw_match_offset))


def find_primary_error(log: Optional[str], language_hint: Language | str | None = None) -> Optional[ErrorSignature]:
    sigs = extract_errors(log, language_hint)
    if not sigs:
        return None
    for s in sigs:
        if s.file_path and s.line_number is not None:
            return s
    return sigs[0]


def extract_log_context(log: Optional[str], offset: int, context_lines: int = 10) -> str:
    """
    Return the lines around a character offset: `context_lines` before, the line holding the offset,
    and `context_lines` after.
    """
    if not log:
        return ""
    offset = max(0, min(offset, len(log)))
    lines = log.split("\n")
    at = log.count("\n", 0, offset)
    start = max(0, at - context_lines)
    end = min(len(lines), at + context_lines + 1)
    return "\n".join(lines[start:end])


_CATEGORIES: List[Tuple[str, Tuple[str, ...]]] = [
    ("syntax", ("SyntaxError", "IndentationError", "TabError", "ParseError")),
    ("import", ("ModuleNotFoundError", "ImportError", "ModuleNotFound")),
    ("type", ("TypeError", "TS2304", "TS2322", "TS2339")),
    ("reference", ("ReferenceError", "NameError", "undefined reference")),
    ("runtime", ("NullPointerException", "ArrayIndexOutOfBoundsException")),
    ("build", ("BuildError", "CompilationError", "LinkerError")),
    ("docker", ("DockerBuildError", "DockerCopyError")),
]

_TS_CODE_RE = re.compile(r"^TS\d+$")


def categorize_error(error_kind: Optional[str]) -> str:
    if not error_kind:
        return "unknown"
    for category, kinds in _CATEGORIES:
        if any(k in error_kind for k in kinds):
            return category
    # Any other tsc diagnostic code is a type-checker complaint.
    if _TS_CODE_RE.match(error_kind):
        return "type"
    return "unknown"
