from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from codeautopsy.errors import CollaboratorError
from codeautopsy.llm.chat_client import ChatClient
from codeautopsy.llm.parsing import extract_json_object
from codeautopsy.models import AIDiagnosis


_SYSTEM = (
    "You are a CI/CD failure analyst. You read build logs and name the single source file and line "
    "that caused the build to fail. You answer with one JSON object and nothing else."
)

_RESPONSE_FORMAT = """Respond ONLY with a JSON object:
{
  "file_path": "src/components/Header.js",
  "line_number": 42,
  "error_kind": "SyntaxError",
  "message": "Missing closing parenthesis after argument list",
  "language": "javascript",
  "confidence": 0.9,
  "suggested_fix": "brief suggestion or null"
}
Use null for file_path/line_number when they cannot be determined, and lower the confidence when unsure."""

_KIND_HINTS: Dict[str, str] = {
    "SyntaxError": "Look for unbalanced brackets, quotes or parentheses and bad indentation.",
    "IndentationError": "Look for mixed tabs/spaces and blocks with no body.",
    "ModuleNotFoundError": "Find the missing module and the file that imports it.",
    "ImportError": "Find the failing import statement and the importing file.",
    "TypeError": "Look for wrong argument types and access on null/undefined values.",
    "CompilationError": "Use the first compiler diagnostic; later ones are usually cascades.",
    "DockerBuildError": "Check COPY sources, RUN commands and the base image.",
}


def build_full_prompt(log: str, language: Optional[str]) -> str:
    hint = f"\nThe project appears to use {language}.\n" if language else ""
    return (
        "Analyze the build log below and identify the FIRST error (later ones may be cascades):\n"
        "1. the file path relative to the repository root (drop runner prefixes like /github/workspace/)\n"
        "2. the line number, if present\n"
        "3. the error kind (SyntaxError, ImportError, CompilationError, ...)\n"
        "4. a one-sentence description\n"
        "5. your confidence from 0.0 to 1.0\n"
        f"{hint}\n"
        f"Build log:\n```\n{log}\n```\n\n"
        f"{_RESPONSE_FORMAT}"
    )


def build_verify_prompt(window: str, error_kind: Optional[str]) -> str:
    kind = error_kind or "build"
    hint = _KIND_HINTS.get(kind, "")
    return (
        f"A regex pass found a {kind} in this excerpt of a build log. Confirm or correct the failing "
        f"file and line.\n{hint}\n\n"
        f"Log excerpt:\n```\n{window}\n```\n\n"
        f"{_RESPONSE_FORMAT}"
    )


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if data.get(k) not in (None, ""):
            return data[k]
    return None


def parse_diagnosis(data: Dict[str, Any]) -> AIDiagnosis:
    # Models drift between snake_case and camelCase keys.
    kind = _first(data, "error_kind", "errorType", "error_type")
    return AIDiagnosis(
        file_path=_first(data, "file_path", "filePath"),
        line_number=_first(data, "line_number", "lineNumber"),
        error_kind=None if kind == "Unknown" else kind,
        message=_first(data, "message", "errorMessage", "error_message"),
        language=_first(data, "language"),
        confidence=_first(data, "confidence") or 0.0,
        suggested_fix=_first(data, "suggested_fix", "suggestedFix"),
    )


@dataclass(frozen=True)
class LLMDiagnoser:
    """AI diagnosis collaborator backed by a chat completions model."""

    client: ChatClient
    model: str
    max_tokens: int = 1024

    def diagnose_from_text(
        self,
        context: str,
        *,
        mode: str,
        language: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> Optional[AIDiagnosis]:
        if mode == "verify":
            prompt = build_verify_prompt(context, error_kind)
        else:
            prompt = build_full_prompt(context, language)
        text = self.client.chat(
            model=self.model,
            messages=[{"role": "system", "content": _SYSTEM}, {"role": "user", "content": prompt}],
            max_tokens=self.max_tokens,
            temperature=0.0,
        )
        try:
            data = extract_json_object(text)
        except ValueError as e:
            raise CollaboratorError(f"diagnosis_reply_unparseable: {e}") from e
        return parse_diagnosis(data)
