from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from codeautopsy.models import Language


_EXTENSIONS: Dict[str, Language] = {
    ".py": Language.python,
    ".pyw": Language.python,
    ".pyi": Language.python,
    ".js": Language.javascript,
    ".jsx": Language.javascript,
    ".mjs": Language.javascript,
    ".cjs": Language.javascript,
    ".ts": Language.typescript,
    ".tsx": Language.typescript,
    ".java": Language.java,
    ".c": Language.c,
    ".h": Language.c,
    ".cpp": Language.cpp,
    ".cc": Language.cpp,
    ".cxx": Language.cpp,
    ".hpp": Language.cpp,
    ".hxx": Language.cpp,
    ".go": Language.go,
    ".rs": Language.rust,
    ".rb": Language.ruby,
    ".rake": Language.ruby,
    ".gemspec": Language.ruby,
    ".dockerfile": Language.dockerfile,
}

# Log fingerprints per language. Each hit counts once per occurrence.
_LOG_HINTS: Dict[Language, List[re.Pattern[str]]] = {
    Language.python: [
        re.compile(r"Traceback \(most recent call last\)"),
        re.compile(r"IndentationError|ModuleNotFoundError|ImportError|AttributeError|KeyError|NameError"),
        re.compile(r"pip install", re.IGNORECASE),
        re.compile(r"requirements\.txt"),
        re.compile(r"\.py:\d+:|\.py\", line \d+"),
    ],
    Language.javascript: [
        re.compile(r"ReferenceError"),
        re.compile(r"is not a function"),
        re.compile(r"Cannot find module|Module not found"),
        re.compile(r"npm ERR!|yarn error", re.IGNORECASE),
        re.compile(r"node_modules"),
        re.compile(r"\.(?:js|jsx|mjs|cjs):\d+:\d+"),
        re.compile(r"ESLint", re.IGNORECASE),
    ],
    Language.typescript: [
        re.compile(r"\bTS\d{4}:"),
        re.compile(r"TypeScript", re.IGNORECASE),
        re.compile(r"\.tsx?[:(]\d+[:,]\d+"),
        re.compile(r"is not assignable to type"),
        re.compile(r"does not exist on type"),
    ],
    Language.java: [
        re.compile(r"java\.lang\."),
        re.compile(r"ClassNotFoundException|NullPointerException"),
        re.compile(r"\bjavac\b"),
        re.compile(r"\.java:\d+"),
        re.compile(r"\bgradle\b|\bmaven\b|pom\.xml", re.IGNORECASE),
    ],
    Language.c: [
        re.compile(r"\.[ch]:\d+:\d+:"),
        re.compile(r"\bgcc\b|\bclang\b"),
        re.compile(r"undefined reference to"),
        re.compile(r"segmentation fault", re.IGNORECASE),
    ],
    Language.cpp: [
        re.compile(r"\.(?:cpp|cc|cxx|hpp):\d+:\d+:"),
        re.compile(r"\bg\+\+|clang\+\+"),
        re.compile(r"CMake Error"),
        re.compile(r"template", re.IGNORECASE),
    ],
    Language.go: [
        re.compile(r"\.go:\d+:\d+:"),
        re.compile(r"\bgo build\b|\bgo test\b|go\.mod"),
        re.compile(r"cannot find package"),
        re.compile(r"\bundefined: "),
    ],
    Language.rust: [
        re.compile(r"error\[E\d{4}\]"),
        re.compile(r"\bcargo (?:build|test)\b|Cargo\.toml"),
        re.compile(r"\brustc\b"),
        re.compile(r"\.rs:\d+:\d+"),
    ],
    Language.ruby: [
        re.compile(r"NoMethodError"),
        re.compile(r"uninitialized constant"),
        re.compile(r"bundle install|Gemfile"),
        re.compile(r"\.rb:\d+:"),
    ],
    Language.dockerfile: [
        re.compile(r"COPY failed"),
        re.compile(r"Step \d+/\d+ :"),
        re.compile(r"docker build", re.IGNORECASE),
        re.compile(r"\bDockerfile\b"),
    ],
}


@dataclass(frozen=True)
class LanguageGuess:
    language: Language
    # Share of all fingerprint hits that went to the winning language.
    confidence: float
    scores: Dict[Language, int]


def detect_from_path(file_path: Optional[str]) -> Language:
    if not file_path:
        return Language.unknown
    name = file_path.replace("\\", "/").rsplit("/", 1)[-1]
    if name == "Dockerfile" or name.lower().startswith("dockerfile"):
        return Language.dockerfile
    dot = name.rfind(".")
    if dot == -1:
        return Language.unknown
    return _EXTENSIONS.get(name[dot:].lower(), Language.unknown)


def detect_from_error_log(log: Optional[str]) -> Optional[LanguageGuess]:
    if not log:
        return None
    scores: Dict[Language, int] = {}
    for lang, pats in _LOG_HINTS.items():
        n = sum(len(p.findall(log)) for p in pats)
        if n:
            scores[lang] = n
    if not scores:
        return None
    # Ties resolve to registry order (dict order is stable).
    best = max(scores, key=lambda k: scores[k])
    total = sum(scores.values())
    return LanguageGuess(language=best, confidence=scores[best] / total, scores=scores)
