from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional

from codeautopsy.collaborators import CodeRetriever, FixGenerator, LogSource, Publisher
from codeautopsy.errors import CodeAutopsyError, LogUnavailableError
from codeautopsy.gitops.render import ISSUE_LABELS, PR_LABELS, issue_body, issue_title, pr_body, pr_title
from codeautopsy.models import FailureEvent, FixAttempt, FixResult, Language, RetrievedFile
from codeautopsy.notify.dispatch import NotificationDispatcher
from codeautopsy.pipeline.states import (
    Diagnosed,
    Errored,
    FetchSource,
    FixGenerated,
    FixReloaded,
    GenerateFix,
    LoadFixAttempt,
    MarkFixApplied,
    Notify,
    OpenIssue,
    OpenPullRequest,
    Persist,
    Published,
    RecordFixAttempt,
    Retrieved,
    RunDiagnosis,
    SideEffect,
    Signal,
    Start,
    TransitionPolicy,
    Vetoed,
    transition,
)
from codeautopsy.policy.gate import publish_decision
from codeautopsy.scout.merger import Scout
from codeautopsy.store.records import RecordStore
from codeautopsy.telemetry.audit import AuditLogger


@dataclass
class _RunState:
    # Latest version of the event, including a transition whose side effects have not all run yet.
    event: FailureEvent
    log_text: Optional[str] = None
    fix_attempt_id: Optional[int] = None


@dataclass
class PipelineExecutor:
    """
    Drives one FailureEvent through `transition`, performing the side effects it asks for with the
    collaborators and persisting after every step.

    Any exception from a collaborator marks the event FAILED (with the message), attempts the failure
    notification and is then re-raised so the job queue can schedule a retry.
    """

    store: RecordStore
    scout: Scout
    log_source: LogSource
    retriever: CodeRetriever
    fixer: FixGenerator
    publisher: Publisher
    dispatcher: Optional[NotificationDispatcher] = None
    audit: Optional[AuditLogger] = None
    policy: TransitionPolicy = field(default_factory=TransitionPolicy)
    # Below this fix confidence not even an issue is opened; the event ends SKIPPED.
    issue_floor: float = 0.5

    def run(self, event_id: str, *, log_text: Optional[str] = None) -> FailureEvent:
        ev = self.store.get_event(event_id)
        if ev is None:
            raise CodeAutopsyError(f"unknown failure event: {event_id}")

        run = _RunState(event=ev, log_text=log_text)
        pending: Deque[Signal] = deque([Start()])
        try:
            while pending:
                ev = self._step(ev, pending.popleft(), run, pending)
        except Exception as e:  # noqa: BLE001
            self._abort(run.event, e)
            raise
        return ev

    def _step(self, ev: FailureEvent, signal: Signal, run: _RunState, pending: Deque[Signal]) -> FailureEvent:
        before = ev.status
        ev, effects = transition(ev, signal, self.policy)
        run.event = ev
        if ev.status != before:
            self._audit(ev.id, "state.changed", {"from": before.value, "to": ev.status.value, "detail": ev.error_detail})
        for effect in effects:
            if isinstance(effect, Persist):
                ev = run.event = self.store.save_event(ev)
                continue
            nxt = self._perform(ev, effect, run)
            if nxt is not None:
                pending.append(nxt)
        return ev

    def _perform(self, ev: FailureEvent, effect: SideEffect, run: _RunState) -> Optional[Signal]:
        if isinstance(effect, RunDiagnosis):
            log = run.log_text
            if log is None:
                log = self.log_source.fetch_build_log(ev.repo_full_name, ev.run_id, job_id=ev.job_id)
            if log is None:
                raise LogUnavailableError("Could not fetch build logs")
            run.log_text = log
            return Diagnosed(diagnosis=self.scout.diagnose(log, correlation_id=ev.id), log_excerpt=log)

        if isinstance(effect, FetchSource):
            return Retrieved(file=self.retriever.fetch_file(ev.repo_full_name, effect.path, effect.ref))

        if isinstance(effect, GenerateFix):
            fix = self.fixer.generate_fix(effect.diagnosis, effect.original)
            self._audit(
                ev.id,
                "fix.generated",
                {
                    "success": fix.success,
                    "confidence": fix.confidence,
                    "model": fix.model,
                    "latency_ms": fix.latency_ms,
                    "reason": fix.reason,
                },
            )
            return FixGenerated(fix=fix, original=effect.original)

        if isinstance(effect, RecordFixAttempt):
            fa = self.store.add_fix_attempt(
                FixAttempt(
                    failure_event_id=ev.id,
                    original_code=effect.original.content,
                    fixed_code=effect.fix.fixed_content,
                    diff_summary=effect.fix.diff_summary,
                    confidence=effect.fix.confidence,
                    validation_passed=effect.fix.validation_passed,
                    model_used=effect.fix.model,
                    latency_ms=effect.fix.latency_ms,
                )
            )
            run.fix_attempt_id = fa.id
            return None

        if isinstance(effect, LoadFixAttempt):
            attempts = self.store.fix_attempts(ev.id)
            if not attempts:
                raise CodeAutopsyError(f"no recorded fix attempt to publish for event {ev.id}")
            fa = attempts[-1]
            run.fix_attempt_id = fa.id
            self._audit(ev.id, "pipeline.resumed", {"state": ev.status.value, "fix_attempt_id": fa.id})
            return FixReloaded(
                fix=FixResult(
                    success=True,
                    fixed_content=fa.fixed_code,
                    confidence=fa.confidence,
                    diff_summary=fa.diff_summary,
                    model=fa.model_used,
                    latency_ms=fa.latency_ms,
                    validation_passed=fa.validation_passed,
                ),
                original=RetrievedFile(
                    path=str(ev.file_path),
                    content=fa.original_code,
                    ref=ev.commit_sha,
                    language=Language.parse(ev.language),
                ),
            )

        if isinstance(effect, OpenPullRequest):
            d = effect.diagnosis
            ref = self.publisher.open_pull_request(
                ev,
                file_path=str(d.file_path),
                fixed_content=effect.fix.fixed_content,
                base_sha=ev.commit_sha,
                title=pr_title(d),
                body=pr_body(ev, d, diff_summary=effect.fix.diff_summary, confidence=effect.fix.confidence),
                labels=list(PR_LABELS),
            )
            self._audit(ev.id, "pr.created", {"url": ref.url, "number": ref.id, "branch": ref.branch_name, "mode": ref.mode})
            return Published(ref=ref)

        if isinstance(effect, OpenIssue):
            action = publish_decision(effect.fix.confidence, threshold=self.policy.threshold, floor=self.issue_floor)
            if action == "skip":
                return Vetoed(
                    reason=(
                        f"fix confidence ({effect.fix.confidence * 100:.0f}%) below issue floor "
                        f"({self.issue_floor * 100:.0f}%)"
                    )
                )
            d = effect.diagnosis
            ref = self.publisher.open_issue(
                ev,
                title=issue_title(d),
                body=issue_body(
                    ev,
                    d,
                    reason=effect.reason,
                    diff_summary=effect.fix.diff_summary,
                    log_excerpt=run.log_text or ev.raw_log_excerpt,
                ),
                labels=list(ISSUE_LABELS),
            )
            self._audit(ev.id, "issue.created", {"url": ref.url, "number": ref.id, "mode": ref.mode})
            return Published(ref=ref)

        if isinstance(effect, MarkFixApplied):
            if run.fix_attempt_id is not None:
                self.store.mark_fix_applied(run.fix_attempt_id)
            return None

        if isinstance(effect, Notify):
            self._notify(ev, effect)
            return None

        raise CodeAutopsyError(f"unhandled side effect: {type(effect).__name__}")

    def _notify(self, ev: FailureEvent, effect: Notify) -> None:
        if self.dispatcher is None:
            return
        try:
            self.dispatcher.dispatch(ev, effect.outcome)
        except Exception as e:  # noqa: BLE001
            # The terminal state is already persisted; a broken notification path must not undo that.
            self._audit(ev.id, "notify.failed", {"channel": "*", "error": f"{type(e).__name__}: {e}"})

    def _abort(self, ev: FailureEvent, err: Exception) -> None:
        message = f"{type(err).__name__}: {err}"
        self._audit(ev.id, "pipeline.failed", {"state": ev.status.value, "error": message})
        failed, effects = transition(ev, Errored(message=message), self.policy)
        if failed.status != ev.status:
            self._audit(ev.id, "state.changed", {"from": ev.status.value, "to": failed.status.value, "detail": message})
        for effect in effects:
            if isinstance(effect, Persist):
                failed = self.store.save_event(failed)
            elif isinstance(effect, Notify):
                self._notify(failed, effect)

    def _audit(self, correlation_id: str, event_type: str, payload: dict) -> None:
        if self.audit is not None:
            self.audit.write(correlation_id, event_type, payload)
