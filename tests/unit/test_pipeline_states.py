from __future__ import annotations

import pytest

from codeautopsy.errors import InvalidTransitionError
from codeautopsy.models import Diagnosis, FailureEvent, FixResult, Language, PublishedRef, RetrievedFile, State
from codeautopsy.pipeline.states import (
    REASON_FIX_FAILED,
    REASON_UNDIAGNOSABLE,
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
    Start,
    Vetoed,
    transition,
)


def _event(**kw) -> FailureEvent:
    base = dict(id="ev-1", repo_full_name="octo/app", commit_sha="a" * 40, run_id="77", branch="main")
    base.update(kw)
    return FailureEvent(**base)


DIAG = Diagnosis(
    file_path="src/main.py",
    line_number=42,
    error_kind="SyntaxError",
    message="'(' was never closed",
    language=Language.python,
    confidence=0.9,
)
ORIGINAL = RetrievedFile(path="src/main.py", content='print("hello"\n', revision_id="blob1", ref="a" * 40)
PR_REF = PublishedRef(kind="pr", url="https://github.com/octo/app/pull/5", id=5, branch_name="autopsy/fix-x")
ISSUE_REF = PublishedRef(kind="issue", url="https://github.com/octo/app/issues/9", id=9)


def _kinds(effects) -> list:
    return [type(e) for e in effects]


def _to_fixing() -> FailureEvent:
    ev, _ = transition(_event(), Start())
    ev, _ = transition(ev, Diagnosed(diagnosis=DIAG, log_excerpt="log"))
    ev, _ = transition(ev, Retrieved(file=ORIGINAL))
    return ev


def test_start_moves_to_analyzing() -> None:
    ev, effects = transition(_event(), Start())
    assert ev.status == State.analyzing
    assert _kinds(effects) == [Persist, RunDiagnosis]


def test_transition_does_not_mutate_input() -> None:
    original = _event()
    transition(original, Start())
    assert original.status == State.detected


def test_diagnosed_records_fields_and_fetches_source() -> None:
    ev, _ = transition(_event(), Start())
    ev, effects = transition(ev, Diagnosed(diagnosis=DIAG, log_excerpt="x" * 20_000))
    assert ev.status == State.retrieving
    assert (ev.file_path, ev.line_number, ev.error_kind) == ("src/main.py", 42, "SyntaxError")
    assert ev.diagnosis_confidence == pytest.approx(0.9)
    assert len(ev.raw_log_excerpt) == 10_000
    assert _kinds(effects) == [Persist, FetchSource]
    assert effects[1] == FetchSource(path="src/main.py", ref="a" * 40)


def test_no_file_is_undiagnosable() -> None:
    ev, _ = transition(_event(), Start())
    ev, effects = transition(ev, Diagnosed(diagnosis=Diagnosis(error_kind="ModuleNotFoundError", confidence=0.6)))
    assert ev.status == State.failed
    assert ev.error_detail == REASON_UNDIAGNOSABLE
    assert _kinds(effects) == [Persist, Notify]
    assert effects[-1].outcome.status == State.failed


def test_protected_path_is_skipped_without_retrieval() -> None:
    ev, _ = transition(_event(), Start())
    wf = DIAG.model_copy(update={"file_path": ".github/workflows/ci.yml"})
    ev, effects = transition(ev, Diagnosed(diagnosis=wf))
    assert ev.status == State.skipped
    assert "protected path" in ev.error_detail
    assert FetchSource not in _kinds(effects)
    assert GenerateFix not in _kinds(effects)
    assert _kinds(effects) == [Persist, Notify]


def test_retrieved_asks_for_a_fix() -> None:
    ev = _to_fixing()
    assert ev.status == State.fixing


def test_high_confidence_fix_opens_pull_request() -> None:
    ev = _to_fixing()
    fix = FixResult(success=True, fixed_content='print("hello")\n', confidence=0.92, validation_passed=True)
    ev, effects = transition(ev, FixGenerated(fix=fix, original=ORIGINAL))
    assert ev.status == State.validating
    assert ev.confidence_final == pytest.approx(0.92)
    assert _kinds(effects) == [Persist, RecordFixAttempt, OpenPullRequest]

    ev, effects = transition(ev, Published(ref=PR_REF))
    assert ev.status == State.pr_created
    assert ev.pr_or_issue_ref == PR_REF.url
    assert _kinds(effects) == [Persist, MarkFixApplied, Notify]
    assert effects[-1].outcome.ref == PR_REF


def test_low_confidence_fix_opens_issue() -> None:
    ev = _to_fixing()
    fix = FixResult(success=True, fixed_content='print("hello")\n', confidence=0.6, validation_passed=True)
    ev, effects = transition(ev, FixGenerated(fix=fix, original=ORIGINAL))
    assert _kinds(effects) == [Persist, RecordFixAttempt, OpenIssue]
    assert "below threshold" in effects[-1].reason

    ev, effects = transition(ev, Published(ref=ISSUE_REF))
    assert ev.status == State.manual_review
    assert MarkFixApplied not in _kinds(effects)
    assert _kinds(effects)[-1] is Notify


def test_threshold_is_inclusive() -> None:
    ev = _to_fixing()
    fix = FixResult(success=True, fixed_content="x\n", confidence=0.85)
    _, effects = transition(ev, FixGenerated(fix=fix, original=ORIGINAL))
    assert OpenPullRequest in _kinds(effects)


def test_failed_fix_generation() -> None:
    ev = _to_fixing()
    fix = FixResult(success=False, fixed_content="", reason="Fixed code is empty")
    ev, effects = transition(ev, FixGenerated(fix=fix, original=ORIGINAL))
    assert ev.status == State.failed
    assert ev.error_detail == f"{REASON_FIX_FAILED}: Fixed code is empty"
    assert RecordFixAttempt not in _kinds(effects)

    ev = _to_fixing()
    bad = FixResult(success=False, fixed_content="partial\n", confidence=0.3, reason="Fix changes too many lines")
    ev, effects = transition(ev, FixGenerated(fix=bad, original=ORIGINAL))
    assert ev.status == State.failed
    assert _kinds(effects) == [Persist, RecordFixAttempt, Notify]


def test_errored_fails_non_terminal_and_is_ignored_on_terminal() -> None:
    ev = _to_fixing()
    failed, effects = transition(ev, Errored(message="RetrievalError: boom"))
    assert failed.status == State.failed
    assert failed.error_detail == "RetrievalError: boom"
    assert _kinds(effects) == [Persist, Notify]

    again, effects = transition(failed, Errored(message="other"))
    assert again is failed
    assert effects == []


def test_start_restarts_a_failed_event() -> None:
    failed = _event(status=State.failed, error_detail="PublishError: 502", confidence_final=0.9)
    ev, effects = transition(failed, Start())
    assert ev.status == State.analyzing
    assert ev.error_detail is None
    assert ev.confidence_final is None
    assert _kinds(effects) == [Persist, RunDiagnosis]


@pytest.mark.parametrize("status", [State.pr_created, State.manual_review, State.skipped])
def test_start_on_finished_event_is_a_no_op(status: State) -> None:
    done = _event(status=status)
    ev, effects = transition(done, Start())
    assert ev is done
    assert effects == []


@pytest.mark.parametrize("status", [State.retrieving, State.fixing])
def test_start_mid_run_refetches_source_in_place(status: State) -> None:
    stuck = _event(status=status, file_path="src/main.py", error_kind="SyntaxError")
    ev, effects = transition(stuck, Start())
    assert ev.status == status
    assert _kinds(effects) == [FetchSource]
    assert effects[0].path == "src/main.py"

    ev, effects = transition(ev, Retrieved(file=ORIGINAL))
    assert ev.status == State.fixing
    assert GenerateFix in _kinds(effects)


def test_start_in_validating_reloads_the_recorded_fix() -> None:
    stuck = _event(status=State.validating, file_path="src/main.py", confidence_final=0.9)
    ev, effects = transition(stuck, Start())
    assert ev is stuck
    assert _kinds(effects) == [LoadFixAttempt]

    fix = FixResult(success=True, fixed_content='print("hello")\n', confidence=0.9, validation_passed=True)
    ev, effects = transition(ev, FixReloaded(fix=fix, original=ORIGINAL))
    assert ev.status == State.validating
    assert _kinds(effects) == [OpenPullRequest]

    low = fix.model_copy(update={"confidence": 0.6})
    _, effects = transition(stuck, FixReloaded(fix=low, original=ORIGINAL))
    assert _kinds(effects) == [OpenIssue]


def test_start_mid_run_without_diagnosis_is_rejected() -> None:
    with pytest.raises(InvalidTransitionError):
        transition(_event(status=State.fixing), Start())


def test_fix_reloaded_outside_validating_is_rejected() -> None:
    fix = FixResult(success=True, fixed_content="x", confidence=1.0)
    with pytest.raises(InvalidTransitionError):
        transition(_event(status=State.fixing, file_path="src/main.py"), FixReloaded(fix=fix, original=ORIGINAL))


def test_vetoed_skips() -> None:
    ev = _to_fixing()
    ev, effects = transition(ev, Vetoed(reason="below floor"))
    assert ev.status == State.skipped
    assert ev.error_detail == "below floor"
    assert _kinds(effects)[-1] is Notify


@pytest.mark.parametrize(
    "signal",
    [
        Retrieved(file=ORIGINAL),
        Published(ref=PR_REF),
        FixGenerated(fix=FixResult(success=True, fixed_content="x", confidence=1.0), original=ORIGINAL),
        Diagnosed(diagnosis=DIAG),
    ],
)
def test_out_of_order_signals_are_rejected(signal) -> None:
    with pytest.raises(InvalidTransitionError):
        transition(_event(), signal)


def test_terminal_state_rejects_veto() -> None:
    with pytest.raises(InvalidTransitionError):
        transition(_event(status=State.pr_created), Vetoed(reason="x"))
