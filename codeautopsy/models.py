from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_confidence(v: Any) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return 0.0
    if f != f:  # NaN
        return 0.0
    return max(0.0, min(1.0, f))


class Language(str, Enum):
    python = "python"
    javascript = "javascript"
    typescript = "typescript"
    java = "java"
    go = "go"
    rust = "rust"
    c = "c"
    cpp = "cpp"
    ruby = "ruby"
    dockerfile = "dockerfile"
    unknown = "unknown"

    @classmethod
    def parse(cls, value: "str | Language | None") -> "Language":
        if isinstance(value, Language):
            return value
        if not value:
            return cls.unknown
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.unknown


class ErrorSignature(BaseModel):
    """
    One (file, line, kind, message) tuple pulled out of raw log text by a pattern rule.
    """

    model_config = {"frozen": True}

    file_path: Optional[str] = None
    line_number: Optional[int] = None
    column: Optional[int] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    raw_match_offset: int = 0
    raw_match_text: str = ""

    # Which rule set produced the match, plus rule-specific extras (missing module, symbol, ...)
    language: Language = Language.unknown
    extra: Dict[str, str] = Field(default_factory=dict)


class DiagnosisSource(str, Enum):
    fast_path = "FAST_PATH"
    ai = "AI"
    merged = "MERGED"


class Diagnosis(BaseModel):
    file_path: Optional[str] = None
    line_number: Optional[int] = None
    column: Optional[int] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    language: Language = Language.unknown
    confidence: float = 0.0
    source: DiagnosisSource = DiagnosisSource.fast_path
    verified: bool = False
    merged: bool = False

    raw_match_text: Optional[str] = None
    suggested_fix: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return clamp_confidence(v)

    def summary(self) -> str:
        if not self.file_path:
            return "Could not identify the failing file"
        out = f"Found error in {self.file_path}"
        if self.line_number:
            out += f" at line {self.line_number}"
        if self.error_kind:
            out += f": {self.error_kind}"
        out += f" ({self.confidence * 100:.0f}% confidence)"
        return out


class AIDiagnosis(BaseModel):
    """
    Reply contract of the remote AI diagnosis collaborator.
    """

    file_path: Optional[str] = None
    line_number: Optional[int] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    language: Optional[str] = None
    confidence: float = 0.0
    suggested_fix: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return clamp_confidence(v)

    @field_validator("line_number", mode="before")
    @classmethod
    def _coerce_line(cls, v: Any) -> Optional[int]:
        if v is None or v == "":
            return None
        try:
            n = int(v)
        except (TypeError, ValueError):
            return None
        return n if n > 0 else None


class State(str, Enum):
    detected = "DETECTED"
    analyzing = "ANALYZING"
    retrieving = "RETRIEVING"
    fixing = "FIXING"
    validating = "VALIDATING"
    pr_created = "PR_CREATED"
    manual_review = "MANUAL_REVIEW"
    skipped = "SKIPPED"
    failed = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({State.pr_created, State.manual_review, State.skipped, State.failed})


class FailureEvent(BaseModel):
    """
    One detected CI failure. Written by the ingestion boundary once (DETECTED), then owned by the pipeline.
    """

    id: str
    repo_full_name: str
    commit_sha: str
    run_id: str
    branch: str = "unknown"
    job_id: Optional[str] = None
    workflow_name: Optional[str] = None
    logs_url: Optional[str] = None
    status: State = State.detected

    file_path: Optional[str] = None
    line_number: Optional[int] = None
    column: Optional[int] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    language: Optional[str] = None
    diagnosis_confidence: Optional[float] = None
    diagnosis_source: Optional[str] = None

    confidence_final: Optional[float] = None
    pr_or_issue_ref: Optional[str] = None
    error_detail: Optional[str] = None
    raw_log_excerpt: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def owner(self) -> str:
        return self.repo_full_name.split("/", 1)[0]

    @property
    def repo_name(self) -> str:
        parts = self.repo_full_name.split("/", 1)
        return parts[1] if len(parts) > 1 else parts[0]

    def diagnosis(self) -> Diagnosis:
        return Diagnosis(
            file_path=self.file_path,
            line_number=self.line_number,
            column=self.column,
            error_kind=self.error_kind,
            message=self.error_message,
            language=Language.parse(self.language),
            confidence=self.diagnosis_confidence or 0.0,
        )


class FixAttempt(BaseModel):
    id: Optional[int] = None
    failure_event_id: str
    original_code: str
    fixed_code: str
    diff_summary: str = ""
    confidence: float = 0.0
    validation_passed: bool = False
    model_used: Optional[str] = None
    latency_ms: Optional[int] = None
    applied: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class RateLimitRecord(BaseModel):
    repo_full_name: str
    attempts_this_hour: int = 0
    hourly_reset_at: datetime
    is_blacklisted: bool = False
    last_attempt_at: Optional[datetime] = None
    # Bumped on every write; used for compare-and-set updates.
    version: int = 0


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int
    reason: Optional[str] = None


class NotificationRecord(BaseModel):
    failure_event_id: str
    channel: str
    status: Literal["SENT", "FAILED"]
    sent_at: datetime = Field(default_factory=utc_now)
    error: Optional[str] = None


class RetrievedFile(BaseModel):
    path: str
    content: str
    revision_id: Optional[str] = None
    ref: Optional[str] = None
    language: Language = Language.unknown


class FixResult(BaseModel):
    success: bool
    fixed_content: str = ""
    confidence: float = 0.0
    diff_summary: str = ""
    model: Optional[str] = None
    latency_ms: Optional[int] = None
    validation_passed: bool = False
    reason: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return clamp_confidence(v)


class PublishedRef(BaseModel):
    kind: Literal["pr", "issue"]
    url: str
    id: int
    branch_name: Optional[str] = None
    mode: Literal["mock", "real"] = "real"


class Outcome(BaseModel):
    """
    What a notification channel is told about a finished pipeline run.
    """

    status: State
    confidence: Optional[float] = None
    ref: Optional[PublishedRef] = None
    error: Optional[str] = None

    @property
    def is_failure(self) -> bool:
        return self.status == State.failed


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    # An attempt raised; the broker holds the message until its backoff delay runs out.
    retrying = "retrying"
    completed = "completed"
    failed = "failed"


class Job(BaseModel):
    """Ledger row for one pipeline run message. `job_id` is the broker's message id."""

    job_id: str
    failure_event_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts_made: int = 0
    max_attempts: int = 3
    status: JobStatus = JobStatus.queued
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
