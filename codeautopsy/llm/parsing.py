from __future__ import annotations

import json
import re
from typing import Any, Dict


_FENCE_RE = re.compile(r"```[\w+\-]*[ \t]*\n?([\s\S]*?)```")


def extract_json_object(text: str | None) -> Dict[str, Any]:
    """
    Models sometimes wrap JSON in fences or add prose around it; dig out the first {...} object.
    Raises ValueError when nothing parseable is found.
    """
    t = (text or "").strip()
    if not t:
        raise ValueError("empty_model_output")
    m = _FENCE_RE.search(t)
    if m:
        t = m.group(1).strip()
    try:
        data = json.loads(t)
    except json.JSONDecodeError:
        i = t.find("{")
        j = t.rfind("}")
        if i == -1 or j <= i:
            raise ValueError(f"json_parse_failed: {t[:200]}")
        data = json.loads(t[i : j + 1])
    if not isinstance(data, dict):
        raise ValueError("json_parse_failed: non-object json")
    return data


def extract_code_block(text: str | None, language: str | None = None) -> str:
    """Body of the first fenced code block (preferring one tagged with `language`), else the whole text."""
    t = (text or "").strip()
    if language:
        m = re.search(rf"```{re.escape(language)}[ \t]*\n?([\s\S]*?)```", t, re.IGNORECASE)
        if m:
            return m.group(1).strip("\n")
    m = _FENCE_RE.search(t)
    if m:
        return m.group(1).strip("\n")
    return t
