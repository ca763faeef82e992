from __future__ import annotations

from typing import Literal, Optional, Protocol

from codeautopsy.models import AIDiagnosis, Diagnosis, FailureEvent, FixResult, Outcome, PublishedRef, RetrievedFile


DiagnosisMode = Literal["full", "verify"]


class LogSource(Protocol):
    def fetch_build_log(self, repo_full_name: str, run_id: str, *, job_id: Optional[str] = None) -> Optional[str]:
        ...


class AIDiagnosisClient(Protocol):
    """
    Remote diagnosis. "verify" gets a short window around an already matched error;
    "full" gets the (tail of the) whole log. Raising is allowed: callers degrade.
    """

    def diagnose_from_text(
        self,
        context: str,
        *,
        mode: DiagnosisMode,
        language: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> Optional[AIDiagnosis]:
        ...


class CodeRetriever(Protocol):
    def fetch_file(self, repo_full_name: str, path: str, ref: str) -> RetrievedFile:
        ...


class FixGenerator(Protocol):
    def generate_fix(self, diagnosis: Diagnosis, original: RetrievedFile) -> FixResult:
        ...


class Publisher(Protocol):
    def open_pull_request(
        self,
        event: FailureEvent,
        *,
        file_path: str,
        fixed_content: str,
        base_sha: Optional[str],
        title: str,
        body: str,
        labels: list[str],
    ) -> PublishedRef:
        ...

    def open_issue(self, event: FailureEvent, *, title: str, body: str, labels: list[str]) -> PublishedRef:
        ...


class Notifier(Protocol):
    # Channel name, used as the NotificationRecord.channel value.
    name: str

    def notify(self, event: FailureEvent, outcome: Outcome) -> None:
        ...
