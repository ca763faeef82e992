from __future__ import annotations

import re
from typing import Optional


# Known CI runner checkout layouts. Tried in order; the first match is stripped and the rest are skipped.
_RUNNER_PREFIXES: list[re.Pattern[str]] = [
    # GitHub-hosted Linux/macOS: /home/runner/work/<repo>/<repo>/
    re.compile(r"^/?home/runner/work/[^/]+/[^/]+/", re.IGNORECASE),
    re.compile(r"^/?Users/runner/work/[^/]+/[^/]+/", re.IGNORECASE),
    # Container jobs / Docker actions
    re.compile(r"^/?github/workspace/", re.IGNORECASE),
    # GitHub-hosted Windows
    re.compile(r"^[A-Z]:/a/[^/]+/[^/]+/", re.IGNORECASE),
    # Self-hosted runners
    re.compile(r"^[A-Z]:/actions-runner/_work/[^/]+/[^/]+/", re.IGNORECASE),
    re.compile(r"^/?(?:[^/]+/)*actions-runner/_work/[^/]+/[^/]+/", re.IGNORECASE),
]

# "repo-name/repo-name/src/x.py" -> "src/x.py"
_DUPLICATE_SEGMENT_RE = re.compile(r"^([^/]+)/\1/")


def _normalize_once(p: str) -> str:
    p = p.replace("\\", "/")
    for pat in _RUNNER_PREFIXES:
        stripped = pat.sub("", p, count=1)
        if stripped != p:
            p = stripped
            break
    p = _DUPLICATE_SEGMENT_RE.sub("", p, count=1)
    return p.lstrip("/").strip()


def normalize(path: Optional[str]) -> str:
    """
    Turn a file path as printed by a CI runner into a repo-relative path.

    Steps: backslashes to slashes, strip one known runner prefix, strip one duplicated leading
    segment, strip leading slashes. The steps are re-applied until the path stops changing, so
    normalize(normalize(p)) == normalize(p) holds even for stacked prefixes like "a/a/a/a/b".
    Every step only shortens the string, so the loop terminates.
    """
    if not path:
        return ""
    cur = path.strip()
    while True:
        nxt = _normalize_once(cur)
        if nxt == cur:
            return cur
        cur = nxt


def same_file(a: Optional[str], b: Optional[str]) -> bool:
    na, nb = normalize(a), normalize(b)
    return bool(na) and na == nb
