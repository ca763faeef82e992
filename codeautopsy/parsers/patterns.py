from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from codeautopsy.models import Language


Extracted = Dict[str, Any]


@dataclass(frozen=True)
class PatternRule:
    """
    One compiled regex plus the function that turns a match into signature fields
    (file_path, line_number, column, error_kind, message, extra).
    """

    name: str
    pattern: re.Pattern[str]
    extract: Callable[[re.Match[str]], Extracted]


def _int(v: Optional[str]) -> Optional[int]:
    return int(v) if v else None


def _strip_dot_slash(p: str) -> str:
    while p.startswith("./"):
        p = p[2:]
    return p


def _last_segment(kind: str) -> str:
    # json.decoder.JSONDecodeError -> JSONDecodeError
    return kind.split(".")[-1]


# Path characters accepted inside most compiler/test-runner outputs.
_P = r"[\w./\\\-]+"


# ---------- Python ----------

_PY_TRACEBACK_RE = re.compile(
    r'File "(?P<file>[^"\n]+)", line (?P<line>\d+)(?:, in [^\n]+)?\n'
    r"[ \t]+[^\n]*\n"
    r"(?:[ \t]*[~^]+[ \t~^]*\n)?"
    r"(?P<kind>[A-Za-z_][\w.]*(?:Error|Exception|Exit|Interrupt)): (?P<msg>[^\n]+)"
)
_PY_SYNTAX_RE = re.compile(
    r'File "(?P<file>[^"\n]+)", line (?P<line>\d+)[^\n]*\n'
    r"(?:[^\n]*\n){0,3}?"
    r"(?P<kind>SyntaxError|IndentationError|TabError): (?P<msg>[^\n]+)"
)
_PY_MODULE_RE = re.compile(r"ModuleNotFoundError: No module named '(?P<mod>[^'\n]+)'")


def _py_traceback(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file"),
        "line_number": int(m.group("line")),
        "error_kind": _last_segment(m.group("kind")),
        "message": m.group("msg").strip(),
    }


def _py_module(m: re.Match[str]) -> Extracted:
    mod = m.group("mod")
    return {
        "error_kind": "ModuleNotFoundError",
        "message": f"No module named '{mod}'",
        "extra": {"missing_module": mod},
    }


PYTHON_RULES: Tuple[PatternRule, ...] = (
    PatternRule("python.traceback", _PY_TRACEBACK_RE, _py_traceback),
    PatternRule("python.syntax", _PY_SYNTAX_RE, _py_traceback),
    PatternRule("python.module_not_found", _PY_MODULE_RE, _py_module),
)


# ---------- JavaScript ----------

_JS_NODE_RE = re.compile(
    r"(?P<file>[/\\][\w./\\\-]+\.(?:js|jsx|mjs|cjs)):(?P<line>\d+)(?::(?P<col>\d+))?\n"
    r"[^\n]*\n"
    r"[ \t]*\^+\s*\n"
    r"(?P<kind>\w+): (?P<msg>[^\n]+)"
)
_JS_MODULE_RE = re.compile(
    r"Error: Cannot find module '(?P<mod>[^'\n]+)'[\s\S]*?Require stack:[ \t]*\n(?P<stack>(?:[ \t]*- [^\n]+\n?)+)"
)
_JS_ESLINT_RE = re.compile(
    r"(?P<file>[/\\][\w./\\\-]+\.(?:js|jsx|ts|tsx))[ \t]*\n"
    r"[ \t]+(?P<line>\d+):(?P<col>\d+)[ \t]+error[ \t]+(?P<msg>[^\n]+?)[ \t]+(?P<rule>[\w/@\-]+)[ \t]*$",
    re.MULTILINE,
)
_JS_WEBPACK_RE = re.compile(
    r"ERROR in (?P<file>[./\\]?[\w./\\\-]+\.(?:js|jsx|ts|tsx))[^\n]*\n"
    r"[^\n]*?(?P<line>\d+):(?P<col>\d+)[^\n]*\n"
    r"(?P<msg>[^\n]*)"
)


def _js_node(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file"),
        "line_number": int(m.group("line")),
        "column": _int(m.group("col")),
        "error_kind": m.group("kind"),
        "message": m.group("msg").strip(),
    }


def _js_module(m: re.Match[str]) -> Extracted:
    stack = [ln.strip() for ln in m.group("stack").strip().splitlines() if ln.strip()]
    first = stack[0][2:].strip() if stack and stack[0].startswith("- ") else None
    return {
        "file_path": first or None,
        "error_kind": "ModuleNotFoundError",
        "message": f"Cannot find module '{m.group('mod')}'",
        "extra": {"missing_module": m.group("mod")},
    }


def _js_eslint(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file"),
        "line_number": int(m.group("line")),
        "column": int(m.group("col")),
        "error_kind": "ESLintError",
        "message": m.group("msg").strip(),
        "extra": {"rule": m.group("rule")},
    }


def _js_webpack(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file"),
        "line_number": int(m.group("line")),
        "column": int(m.group("col")),
        "error_kind": "BuildError",
        "message": m.group("msg").strip() or None,
    }


JAVASCRIPT_RULES: Tuple[PatternRule, ...] = (
    PatternRule("javascript.node", _JS_NODE_RE, _js_node),
    PatternRule("javascript.module_not_found", _JS_MODULE_RE, _js_module),
    PatternRule("javascript.eslint", _JS_ESLINT_RE, _js_eslint),
    PatternRule("javascript.webpack", _JS_WEBPACK_RE, _js_webpack),
)


# ---------- TypeScript ----------

_TS_PAREN_RE = re.compile(
    rf"(?P<file>{_P}\.tsx?)\((?P<line>\d+),(?P<col>\d+)\): error (?P<code>TS\d+): (?P<msg>[^\n]+)"
)
_TS_COLON_RE = re.compile(
    rf"(?P<file>{_P}\.tsx?):(?P<line>\d+):(?P<col>\d+) - error (?P<code>TS\d+): (?P<msg>[^\n]+)"
)


def _ts(m: re.Match[str]) -> Extracted:
    return {
        "file_path": _strip_dot_slash(m.group("file")),
        "line_number": int(m.group("line")),
        "column": int(m.group("col")),
        "error_kind": m.group("code"),
        "message": m.group("msg").strip(),
    }


TYPESCRIPT_RULES: Tuple[PatternRule, ...] = (
    PatternRule("typescript.tsc_paren", _TS_PAREN_RE, _ts),
    PatternRule("typescript.tsc_pretty", _TS_COLON_RE, _ts),
)


# ---------- Java ----------

_JAVAC_RE = re.compile(rf"(?P<file>{_P}\.java):(?P<line>\d+): error: (?P<msg>[^\n]+)")
_MAVEN_RE = re.compile(rf"\[ERROR\] (?P<file>{_P}\.java):\[(?P<line>\d+),(?P<col>\d+)\] (?P<msg>[^\n]+)")
_JAVA_EXC_RE = re.compile(
    r"(?P<kind>[\w.$]+(?:Exception|Error)): (?P<msg>[^\n]+)\n"
    r"\s+at [\w.$<>]+\((?P<file>[^:()\n]+):(?P<line>\d+)\)"
)


def _javac(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file"),
        "line_number": int(m.group("line")),
        "error_kind": "CompilationError",
        "message": m.group("msg").strip(),
    }


def _maven(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file"),
        "line_number": int(m.group("line")),
        "column": int(m.group("col")),
        "error_kind": "BuildError",
        "message": m.group("msg").strip(),
    }


def _java_exc(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file"),
        "line_number": int(m.group("line")),
        "error_kind": m.group("kind"),
        "message": m.group("msg").strip(),
    }


JAVA_RULES: Tuple[PatternRule, ...] = (
    PatternRule("java.javac", _JAVAC_RE, _javac),
    PatternRule("java.maven", _MAVEN_RE, _maven),
    PatternRule("java.exception", _JAVA_EXC_RE, _java_exc),
)


# ---------- C / C++ ----------

_GCC_RE = re.compile(
    rf"(?P<file>{_P}\.(?:c|h|cpp|hpp|cc|cxx|hxx)):(?P<line>\d+):(?P<col>\d+): (?:fatal )?error: (?P<msg>[^\n]+)"
)
_LINKER_RE = re.compile(r"undefined reference to [`'](?P<sym>[^'`\n]+)[`']")


def _gcc(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file"),
        "line_number": int(m.group("line")),
        "column": int(m.group("col")),
        "error_kind": "CompilationError",
        "message": m.group("msg").strip(),
    }


def _linker(m: re.Match[str]) -> Extracted:
    sym = m.group("sym")
    return {
        "error_kind": "LinkerError",
        "message": f"undefined reference to '{sym}'",
        "extra": {"missing_symbol": sym},
    }


C_RULES: Tuple[PatternRule, ...] = (
    PatternRule("c.compiler", _GCC_RE, _gcc),
    PatternRule("c.linker", _LINKER_RE, _linker),
)


# ---------- Go ----------

_GO_RE = re.compile(rf"(?P<file>{_P}\.go):(?P<line>\d+):(?P<col>\d+): (?P<msg>[^\n]+)")


def _go(m: re.Match[str]) -> Extracted:
    return {
        "file_path": _strip_dot_slash(m.group("file")),
        "line_number": int(m.group("line")),
        "column": int(m.group("col")),
        "error_kind": "CompilationError",
        "message": m.group("msg").strip(),
    }


GO_RULES: Tuple[PatternRule, ...] = (PatternRule("go.compiler", _GO_RE, _go),)


# ---------- Rust ----------

_RUSTC_RE = re.compile(
    rf"error\[(?P<code>E\d+)\]: (?P<msg>[^\n]+)\n\s*--> (?P<file>{_P}\.rs):(?P<line>\d+):(?P<col>\d+)"
)


def _rustc(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file"),
        "line_number": int(m.group("line")),
        "column": int(m.group("col")),
        "error_kind": m.group("code"),
        "message": m.group("msg").strip(),
    }


RUST_RULES: Tuple[PatternRule, ...] = (PatternRule("rust.rustc", _RUSTC_RE, _rustc),)


# ---------- Ruby ----------

_RUBY_EXC_RE = re.compile(
    rf"(?P<file>{_P}\.rb):(?P<line>\d+):in [^\n]*?: (?P<msg>[^\n]+?) \((?P<kind>[A-Z]\w*)\)[ \t]*$",
    re.MULTILINE,
)
_RUBY_SYNTAX_RE = re.compile(rf"(?P<file>{_P}\.rb):(?P<line>\d+): syntax error,? (?P<msg>[^\n]+)")


def _ruby_exc(m: re.Match[str]) -> Extracted:
    return {
        "file_path": _strip_dot_slash(m.group("file")),
        "line_number": int(m.group("line")),
        "error_kind": m.group("kind"),
        "message": m.group("msg").strip(),
    }


def _ruby_syntax(m: re.Match[str]) -> Extracted:
    return {
        "file_path": _strip_dot_slash(m.group("file")),
        "line_number": int(m.group("line")),
        "error_kind": "SyntaxError",
        "message": m.group("msg").strip(),
    }


RUBY_RULES: Tuple[PatternRule, ...] = (
    PatternRule("ruby.exception", _RUBY_EXC_RE, _ruby_exc),
    PatternRule("ruby.syntax", _RUBY_SYNTAX_RE, _ruby_syntax),
)


# ---------- Dockerfile ----------

_DOCKER_STEP_RE = re.compile(
    r"Step (?P<step>\d+)/\d+ : (?P<cmd>[^\n]+)\n[\s\S]*?The command [^\n]*returned a non-zero code"
)
_DOCKER_COPY_RE = re.compile(r"COPY failed: (?P<msg>[^\n]+)")


def _docker_step(m: re.Match[str]) -> Extracted:
    cmd = m.group("cmd").strip()
    # The step number stands in for the line: a Dockerfile has (roughly) one instruction per step.
    return {
        "file_path": "Dockerfile",
        "line_number": int(m.group("step")),
        "error_kind": "DockerBuildError",
        "message": f"Command '{cmd}' failed",
        "extra": {"docker_step": cmd},
    }


def _docker_copy(m: re.Match[str]) -> Extracted:
    return {
        "file_path": "Dockerfile",
        "error_kind": "DockerCopyError",
        "message": f"COPY failed: {m.group('msg').strip()}",
    }


DOCKERFILE_RULES: Tuple[PatternRule, ...] = (
    PatternRule("dockerfile.step", _DOCKER_STEP_RE, _docker_step),
    PatternRule("dockerfile.copy", _DOCKER_COPY_RE, _docker_copy),
)


# ---------- Generic (always run) ----------

_GENERIC_RE = re.compile(
    rf"(?P<file>{_P}\.\w+):(?P<line>\d+)(?::(?P<col>\d+))?[ \t]*[-:]?[ \t]*(?:error|Error|ERROR)[: \t]+(?P<msg>[^\n]+)"
)
_ANNOTATION_RE = re.compile(
    r"::error file=(?P<file>[^,\n]+),line=(?P<line>\d+)(?:,col=(?P<col>\d+))?[^:\n]*::(?P<msg>[^\n]+)"
)


def _generic(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file"),
        "line_number": int(m.group("line")),
        "column": _int(m.group("col")),
        "error_kind": "Error",
        "message": m.group("msg").strip(),
    }


def _annotation(m: re.Match[str]) -> Extracted:
    return {
        "file_path": m.group("file").strip(),
        "line_number": int(m.group("line")),
        "column": _int(m.group("col")),
        "error_kind": "AnnotationError",
        "message": m.group("msg").strip(),
    }


GENERIC_RULES: Tuple[PatternRule, ...] = (
    PatternRule("generic.file_line_error", _GENERIC_RE, _generic),
    PatternRule("generic.ci_annotation", _ANNOTATION_RE, _annotation),
)


# Ordered registry. Unknown has no rules of its own: it falls through to GENERIC_RULES only.
LANGUAGE_RULES: Mapping[Language, Tuple[PatternRule, ...]] = {
    Language.python: PYTHON_RULES,
    Language.javascript: JAVASCRIPT_RULES,
    Language.typescript: TYPESCRIPT_RULES,
    Language.java: JAVA_RULES,
    Language.go: GO_RULES,
    Language.rust: RUST_RULES,
    Language.c: C_RULES,
    Language.cpp: C_RULES,
    Language.ruby: RUBY_RULES,
    Language.dockerfile: DOCKERFILE_RULES,
    Language.unknown: (),
}


def rules_for(language: Language | str | None) -> Tuple[Tuple[Language, PatternRule], ...]:
    """
    Rules to run for a language hint, in order: the hinted language's own rules followed by the generic set.
    With no usable hint every language's rules run (C and C++ share one set, so it is only listed once),
    followed by the generic set.
    """
    lang = Language.parse(language)
    out: list[Tuple[Language, PatternRule]] = []
    if lang != Language.unknown:
        out.extend((lang, r) for r in LANGUAGE_RULES[lang])
    else:
        seen: set[int] = set()
        for lg, rules in LANGUAGE_RULES.items():
            if id(rules) in seen:
                continue
            seen.add(id(rules))
            out.extend((lg, r) for r in rules)
    out.extend((Language.unknown, r) for r in GENERIC_RULES)
    return tuple(out)
