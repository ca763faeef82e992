from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from codeautopsy.errors import InvalidTransitionError
from codeautopsy.models import (
    Diagnosis,
    FailureEvent,
    FixResult,
    Outcome,
    PublishedRef,
    RetrievedFile,
    State,
    utc_now,
)
from codeautopsy.policy.gate import ProtectedPathGate


REASON_UNDIAGNOSABLE = "could not identify failing file"
REASON_FIX_FAILED = "fix generation failed"
RAW_LOG_EXCERPT_CHARS = 10_000


# ---------- signals (what happened) ----------


@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Diagnosed:
    diagnosis: Diagnosis
    log_excerpt: Optional[str] = None


@dataclass(frozen=True)
class Retrieved:
    file: RetrievedFile


@dataclass(frozen=True)
class FixGenerated:
    fix: FixResult
    original: RetrievedFile


@dataclass(frozen=True)
class FixReloaded:
    """The fix recorded before an interruption in VALIDATING, loaded back for publishing."""

    fix: FixResult
    original: RetrievedFile


@dataclass(frozen=True)
class Published:
    ref: PublishedRef


@dataclass(frozen=True)
class Vetoed:
    reason: str


@dataclass(frozen=True)
class Errored:
    message: str


Signal = Union[Start, Diagnosed, Retrieved, FixGenerated, FixReloaded, Published, Vetoed, Errored]


# ---------- side effects (what the executor must do next) ----------


@dataclass(frozen=True)
class Persist:
    pass


@dataclass(frozen=True)
class RunDiagnosis:
    pass


@dataclass(frozen=True)
class FetchSource:
    path: str
    ref: str


@dataclass(frozen=True)
class GenerateFix:
    diagnosis: Diagnosis
    original: RetrievedFile


@dataclass(frozen=True)
class RecordFixAttempt:
    original: RetrievedFile
    fix: FixResult


@dataclass(frozen=True)
class LoadFixAttempt:
    pass


@dataclass(frozen=True)
class OpenPullRequest:
    diagnosis: Diagnosis
    original: RetrievedFile
    fix: FixResult


@dataclass(frozen=True)
class OpenIssue:
    diagnosis: Diagnosis
    fix: FixResult
    reason: str


@dataclass(frozen=True)
class MarkFixApplied:
    pass


@dataclass(frozen=True)
class Notify:
    outcome: Outcome


SideEffect = Union[
    Persist,
    RunDiagnosis,
    FetchSource,
    GenerateFix,
    RecordFixAttempt,
    LoadFixAttempt,
    OpenPullRequest,
    OpenIssue,
    MarkFixApplied,
    Notify,
]


@dataclass(frozen=True)
class TransitionPolicy:
    threshold: float = 0.85
    gate: ProtectedPathGate = ProtectedPathGate()


Step = Tuple[FailureEvent, List[SideEffect]]


def _move(event: FailureEvent, status: State, **changes: object) -> FailureEvent:
    return event.model_copy(update={"status": status, "updated_at": utc_now(), **changes})


def _finish(event: FailureEvent, status: State, *, error: Optional[str] = None, ref: Optional[PublishedRef] = None, pre: Sequence[SideEffect] = ()) -> Step:
    changes: dict[str, object] = {}
    if error is not None:
        changes["error_detail"] = error
    if ref is not None:
        changes["pr_or_issue_ref"] = ref.url
    ev = _move(event, status, **changes)
    outcome = Outcome(status=status, confidence=ev.confidence_final, ref=ref, error=ev.error_detail)
    return ev, [Persist(), *pre, Notify(outcome)]


def _publish(event: FailureEvent, fix: FixResult, original: RetrievedFile, policy: TransitionPolicy) -> SideEffect:
    d = event.diagnosis()
    if fix.confidence >= policy.threshold:
        return OpenPullRequest(diagnosis=d, original=original, fix=fix)
    return OpenIssue(
        diagnosis=d,
        fix=fix,
        reason=f"Confidence score ({fix.confidence * 100:.0f}%) below threshold ({policy.threshold * 100:.0f}%)",
    )


def _reject(event: FailureEvent, signal: Signal) -> InvalidTransitionError:
    return InvalidTransitionError(f"{type(signal).__name__} not accepted in state {event.status.value} (event {event.id})")


def transition(event: FailureEvent, signal: Signal, policy: TransitionPolicy = TransitionPolicy()) -> Step:
    """
    The whole pipeline as one pure function: (event, signal) -> (event', side effects).

    DETECTED -> ANALYZING -> RETRIEVING -> FIXING -> VALIDATING -> PR_CREATED | MANUAL_REVIEW,
    with SKIPPED (protected path, or vetoed by the caller) and FAILED reachable from any non-terminal
    state. Terminal states emit Notify. A terminal event ignores Start and Errored (redelivered jobs);
    FAILED is the exception: Start restarts the traversal, since a retry may still succeed. Start on an
    event left in RETRIEVING, FIXING or VALIDATING redoes that stage in place; the status never goes back.
    """
    st = event.status

    if isinstance(signal, Errored):
        if st.is_terminal:
            return event, []
        return _finish(event, State.failed, error=signal.message)

    if isinstance(signal, Start):
        if st == State.failed or st == State.detected or st == State.analyzing:
            ev = _move(event, State.analyzing, error_detail=None, confidence_final=None, pr_or_issue_ref=None)
            return ev, [Persist(), RunDiagnosis()]
        if st.is_terminal:
            return event, []
        # Interrupted mid-run: redo the work of the recorded state without moving the status.
        if not event.file_path:
            raise _reject(event, signal)
        if st == State.validating:
            return event, [LoadFixAttempt()]
        return event, [FetchSource(path=event.file_path, ref=event.commit_sha)]

    if isinstance(signal, Vetoed):
        if st.is_terminal:
            raise _reject(event, signal)
        return _finish(event, State.skipped, error=signal.reason)

    if isinstance(signal, Diagnosed):
        if st != State.analyzing:
            raise _reject(event, signal)
        d = signal.diagnosis
        ev = event.model_copy(
            update={
                "file_path": d.file_path,
                "line_number": d.line_number,
                "column": d.column,
                "error_kind": d.error_kind,
                "error_message": d.message,
                "language": d.language.value,
                "diagnosis_confidence": d.confidence,
                "diagnosis_source": d.source.value,
                "raw_log_excerpt": (signal.log_excerpt or "")[:RAW_LOG_EXCERPT_CHARS] or event.raw_log_excerpt,
            }
        )
        if not d.file_path:
            return _finish(ev, State.failed, error=REASON_UNDIAGNOSABLE)
        hit = policy.gate.matched(d.file_path)
        if hit is not None:
            return _finish(ev, State.skipped, error=f"protected path ({hit}): {d.file_path}")
        ev = _move(ev, State.retrieving)
        return ev, [Persist(), FetchSource(path=d.file_path, ref=ev.commit_sha)]

    if isinstance(signal, Retrieved):
        if st == State.fixing:
            # Source re-fetched after an interruption in FIXING.
            return event, [GenerateFix(diagnosis=event.diagnosis(), original=signal.file)]
        if st != State.retrieving:
            raise _reject(event, signal)
        ev = _move(event, State.fixing)
        return ev, [Persist(), GenerateFix(diagnosis=ev.diagnosis(), original=signal.file)]

    if isinstance(signal, FixGenerated):
        if st != State.fixing:
            raise _reject(event, signal)
        fix = signal.fix
        record: List[SideEffect] = []
        if fix.fixed_content:
            record.append(RecordFixAttempt(original=signal.original, fix=fix))
        ev = event.model_copy(update={"confidence_final": fix.confidence})
        if not fix.success:
            reason = REASON_FIX_FAILED if not fix.reason else f"{REASON_FIX_FAILED}: {fix.reason}"
            return _finish(ev, State.failed, error=reason, pre=record)
        ev = _move(ev, State.validating)
        return ev, [Persist(), *record, _publish(ev, fix, signal.original, policy)]

    if isinstance(signal, FixReloaded):
        if st != State.validating:
            raise _reject(event, signal)
        return event, [_publish(event, signal.fix, signal.original, policy)]

    if isinstance(signal, Published):
        if st != State.validating:
            raise _reject(event, signal)
        if signal.ref.kind == "pr":
            return _finish(event, State.pr_created, ref=signal.ref, pre=[MarkFixApplied()])
        return _finish(event, State.manual_review, ref=signal.ref)

    raise _reject(event, signal)
