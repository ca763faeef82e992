from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from codeautopsy.collaborators import AIDiagnosisClient
from codeautopsy.models import AIDiagnosis, Diagnosis, DiagnosisSource, ErrorSignature, Language
from codeautopsy.parsers.extractor import extract_log_context, find_primary_error
from codeautopsy.parsers.language import detect_from_error_log, detect_from_path
from codeautopsy.parsers.paths import normalize, same_file
from codeautopsy.telemetry.audit import AuditLogger


LOG_TRUNCATED_MARKER = "... [log truncated] ...\n\n"

# Fast-path indicator weights.
_BASE = 0.5
_W_FILE = 0.2
_W_LINE = 0.1
_W_KIND = 0.1
_W_COLUMN = 0.05
_FAST_CAP = 0.95

VERIFY_THRESHOLD = 0.8
SKIP_VERIFY_THRESHOLD = 0.9
# Verification may only move the file when it is this much more confident.
OVERRIDE_MARGIN = 0.2
AGREEMENT_BONUS = 0.1
MERGED_CAP = 0.98


def fast_path_confidence(sig: Optional[ErrorSignature]) -> float:
    if sig is None:
        return 0.0
    c = _BASE
    if normalize(sig.file_path):
        c += _W_FILE
    if sig.line_number is not None:
        c += _W_LINE
    if sig.error_kind:
        c += _W_KIND
    if sig.column is not None:
        c += _W_COLUMN
    # Rounded so that 0.5 + 0.2 + 0.1 compares equal to the 0.8 threshold.
    return min(round(c, 4), _FAST_CAP)


def fast_path(log: str, language_hint: Language | str | None = None) -> Diagnosis:
    """Regex-only diagnosis. Confidence 0 when nothing matched."""
    sig = find_primary_error(log, language_hint)
    if sig is None:
        return Diagnosis(confidence=0.0, source=DiagnosisSource.fast_path)
    path = normalize(sig.file_path) or None
    lang = detect_from_path(path)
    if lang == Language.unknown:
        lang = sig.language
    return Diagnosis(
        file_path=path,
        line_number=sig.line_number,
        column=sig.column,
        error_kind=sig.error_kind,
        message=sig.message,
        language=lang,
        confidence=fast_path_confidence(sig),
        source=DiagnosisSource.fast_path,
        raw_match_text=sig.raw_match_text,
    )


def from_ai(ai: AIDiagnosis, fallback_language: Language = Language.unknown) -> Diagnosis:
    path = normalize(ai.file_path) or None
    lang = Language.parse(ai.language)
    if lang == Language.unknown:
        lang = detect_from_path(path)
    if lang == Language.unknown:
        lang = fallback_language
    return Diagnosis(
        file_path=path,
        line_number=ai.line_number,
        error_kind=ai.error_kind,
        message=ai.message,
        language=lang,
        confidence=ai.confidence,
        source=DiagnosisSource.ai,
        suggested_fix=ai.suggested_fix,
    )


def _longer(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if not b:
        return a
    if not a or len(b) > len(a):
        return b
    return a


def cross_check(fast: Diagnosis, verification: Diagnosis) -> Diagnosis:
    """
    Fold a verification pass into a fast-path diagnosis.

    The fast path keeps its file/line unless the verification names another file with a confidence
    more than OVERRIDE_MARGIN above it. The longer message wins. Agreement on the file averages the two
    confidences.
    """
    out = fast.model_copy()
    agree = same_file(verification.file_path, fast.file_path)
    if (
        verification.file_path
        and not agree
        and verification.confidence - fast.confidence > OVERRIDE_MARGIN
    ):
        out.file_path = verification.file_path
        out.line_number = verification.line_number
        out.column = None
    out.message = _longer(fast.message, verification.message)
    if verification.suggested_fix:
        out.suggested_fix = verification.suggested_fix
    if agree:
        out.confidence = (fast.confidence + verification.confidence) / 2
    out.verified = True
    return out


def merge(fast: Diagnosis, ai: Optional[Diagnosis]) -> Diagnosis:
    """
    Combine a fast-path diagnosis with a full AI diagnosis.

    Same file on both sides: confidence is the mean plus AGREEMENT_BONUS, never below either input and
    never above MERGED_CAP.
    """
    if ai is None or (not ai.file_path and not ai.error_kind and not ai.message):
        return fast.model_copy(update={"merged": False})
    if not fast.file_path and ai.file_path:
        return ai.model_copy(update={"merged": False})
    if fast.file_path and ai.file_path and fast.file_path == ai.file_path:
        mean = (fast.confidence + ai.confidence) / 2
        conf = min(max(mean + AGREEMENT_BONUS, fast.confidence, ai.confidence), MERGED_CAP)
        return Diagnosis(
            file_path=fast.file_path,
            line_number=ai.line_number or fast.line_number,
            column=fast.column,
            error_kind=ai.error_kind or fast.error_kind,
            message=ai.message or fast.message,
            language=ai.language if ai.language != Language.unknown else fast.language,
            confidence=conf,
            source=DiagnosisSource.merged,
            merged=True,
            raw_match_text=fast.raw_match_text,
            suggested_fix=ai.suggested_fix,
        )
    if ai.confidence > fast.confidence:
        return ai.model_copy(update={"merged": False})
    return fast.model_copy(update={"merged": False})


def cap_log(log: str, max_chars: int) -> str:
    if max_chars <= 0 or len(log) <= max_chars:
        return log
    # The tail is where the failure usually is.
    return LOG_TRUNCATED_MARKER + log[-max_chars:]


@dataclass(frozen=True)
class Scout:
    """
    Diagnoses a build log: regex fast path first, the remote AI collaborator only when the fast path
    is not conclusive. Collaborator failures never escape; the best local result is returned instead.
    """

    ai: Optional[AIDiagnosisClient] = None
    audit: Optional[AuditLogger] = None
    max_log_chars: int = 50_000
    verify_context_lines: int = 20

    def diagnose(self, log: Optional[str], *, correlation_id: str = "-", language_hint: Optional[str] = None) -> Diagnosis:
        log = log or ""
        guess = detect_from_error_log(log)
        language = guess.language if guess else Language.parse(language_hint)

        fast = fast_path(log, language_hint)
        if fast.language == Language.unknown and language != Language.unknown:
            fast = fast.model_copy(update={"language": language})

        if fast.confidence >= VERIFY_THRESHOLD and fast.file_path:
            result = self._verify(fast, log, correlation_id=correlation_id)
            path = "verify"
        else:
            ai = self._full(log, language=language, correlation_id=correlation_id)
            result = merge(fast, ai)
            path = "full"

        if self.audit is not None:
            self.audit.write(
                correlation_id,
                "diagnosis.completed",
                {
                    "route": path,
                    "file_path": result.file_path,
                    "line_number": result.line_number,
                    "error_kind": result.error_kind,
                    "confidence": result.confidence,
                    "source": result.source.value,
                    "verified": result.verified,
                    "merged": result.merged,
                    "summary": result.summary(),
                },
            )
        return result

    def _verify(self, fast: Diagnosis, log: str, *, correlation_id: str) -> Diagnosis:
        if fast.confidence >= SKIP_VERIFY_THRESHOLD and fast.file_path and fast.line_number is not None:
            return fast.model_copy(update={"verified": True, "source": DiagnosisSource.fast_path})
        if self.ai is None:
            return fast

        offset = log.find(fast.raw_match_text) if fast.raw_match_text else -1
        window = extract_log_context(log, max(offset, 0), self.verify_context_lines)
        try:
            reply = self.ai.diagnose_from_text(
                window,
                mode="verify",
                language=fast.language.value,
                error_kind=fast.error_kind,
            )
        except Exception as e:  # noqa: BLE001
            self._degraded(correlation_id, "verify", e)
            return fast
        if reply is None:
            return fast
        return cross_check(fast, from_ai(reply, fast.language))

    def _full(self, log: str, *, language: Language, correlation_id: str) -> Optional[Diagnosis]:
        if self.ai is None or not log.strip():
            return None
        try:
            reply = self.ai.diagnose_from_text(
                cap_log(log, self.max_log_chars),
                mode="full",
                language=language.value if language != Language.unknown else None,
            )
        except Exception as e:  # noqa: BLE001
            self._degraded(correlation_id, "full", e)
            return None
        if reply is None:
            return None
        return from_ai(reply, language)

    def _degraded(self, correlation_id: str, route: str, err: Exception) -> None:
        if self.audit is None:
            return
        self.audit.write(
            correlation_id,
            "diagnosis.ai_failed",
            {"route": route, "error": f"{type(err).__name__}: {err}"},
        )
