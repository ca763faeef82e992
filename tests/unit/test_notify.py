from __future__ import annotations

import json
import threading
from typing import Any, Dict, List

import httpx
import pytest

from codeautopsy.errors import CollaboratorError
from codeautopsy.models import FailureEvent, Outcome, PublishedRef, State
from codeautopsy.notify.dispatch import NotificationDispatcher
from codeautopsy.notify.webhooks import WebhookNotifier, discord_payload, headline, slack_payload
from codeautopsy.store.records import RecordStore
from codeautopsy.telemetry.audit import AuditLogger


def _event(**kw) -> FailureEvent:
    base = dict(
        id="ev-1",
        repo_full_name="octo/app",
        commit_sha="a" * 40,
        run_id="77",
        branch="main",
        status=State.pr_created,
        file_path="src/main.py",
        error_kind="SyntaxError",
    )
    base.update(kw)
    return FailureEvent(**base)


PR = PublishedRef(kind="pr", url="https://github.com/octo/app/pull/5", id=5)


def test_slack_payload_has_headline_facts_and_button() -> None:
    p = slack_payload(_event(), Outcome(status=State.pr_created, confidence=0.92, ref=PR))
    att = p["attachments"][0]
    assert att["color"] == "#36a64f"
    assert att["blocks"][0]["text"]["text"] == "CodeAutopsy: Fix Proposed"
    fields = " ".join(f["text"] for f in att["blocks"][1]["fields"])
    assert "octo/app" in fields
    assert "92%" in fields
    assert "`src/main.py`" in fields
    button = att["blocks"][2]["elements"][0]
    assert button["text"]["text"] == "View PR #5"
    assert button["url"] == PR.url


def test_discord_payload_for_failure() -> None:
    ev = _event(status=State.failed, file_path=None)
    p = discord_payload(ev, Outcome(status=State.failed, error="RetrievalError: File not found: x.py"))
    embed = p["embeds"][0]
    assert embed["title"] == "CodeAutopsy: Pipeline Failed"
    assert embed["color"] == 0xFF0000
    names = [f["name"] for f in embed["fields"]]
    assert "Reason" in names
    assert "File" not in names
    assert "url" not in embed


@pytest.mark.parametrize(
    "status,tone",
    [(State.pr_created, "success"), (State.manual_review, "warning"), (State.skipped, "info"), (State.failed, "error")],
)
def test_headline_tone(status: State, tone: str) -> None:
    assert headline(Outcome(status=status))[1] == tone


def test_webhook_notifier_posts_json() -> None:
    seen: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content.decode("utf-8")))
        return httpx.Response(200, text="ok")

    n = WebhookNotifier(name="discord", url="https://hooks.test/d", transport=httpx.MockTransport(handler))
    n.notify(_event(), Outcome(status=State.pr_created, ref=PR))
    assert seen[0]["username"] == "CodeAutopsy"


def test_webhook_notifier_raises_collaborator_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="nope")

    n = WebhookNotifier(name="slack", url="https://hooks.test/s", transport=httpx.MockTransport(handler))
    with pytest.raises(CollaboratorError, match="slack_notify_failed"):
        n.notify(_event(), Outcome(status=State.pr_created))


class _Ok:
    name = "ok"

    def __init__(self) -> None:
        self.outcomes: List[Outcome] = []

    def notify(self, event: FailureEvent, outcome: Outcome) -> None:
        self.outcomes.append(outcome)


class _Broken:
    name = "broken"

    def notify(self, event: FailureEvent, outcome: Outcome) -> None:
        raise CollaboratorError("broken_notify_failed: 500")


class _Slow:
    name = "slow"

    def __init__(self) -> None:
        self.release = threading.Event()

    def notify(self, event: FailureEvent, outcome: Outcome) -> None:
        self.release.wait(5.0)


def test_dispatcher_isolates_channels_and_records_each(tmp_path) -> None:
    store = RecordStore(db_path=str(tmp_path / "db.sqlite"))
    audit = AuditLogger(str(tmp_path / "audit.jsonl"))
    ev = _event()
    store.create_event(ev)
    ok = _Ok()
    d = NotificationDispatcher(notifiers=[_Broken(), ok], store=store, audit=audit, timeout_s=5.0)
    try:
        records = d.dispatch(ev, Outcome(status=State.pr_created, ref=PR))
    finally:
        d.close()

    by_channel = {r.channel: r for r in records}
    assert by_channel["ok"].status == "SENT"
    assert by_channel["broken"].status == "FAILED"
    assert "broken_notify_failed" in by_channel["broken"].error
    assert len(ok.outcomes) == 1
    assert {n.channel for n in store.notifications("ev-1")} == {"ok", "broken"}
    assert audit.read(correlation_id="ev-1", event_type="notify.failed")
    assert audit.read(correlation_id="ev-1", event_type="notify.sent")


def test_dispatcher_times_out_slow_channel() -> None:
    slow = _Slow()
    d = NotificationDispatcher(notifiers=[slow, _Ok()], timeout_s=0.2)
    try:
        records = d.dispatch(_event(), Outcome(status=State.failed, error="x"))
    finally:
        slow.release.set()
        d.close()
    by_channel = {r.channel: r for r in records}
    assert by_channel["slow"].status == "FAILED"
    assert "timed out" in by_channel["slow"].error
    assert by_channel["ok"].status == "SENT"


def test_dispatcher_without_channels() -> None:
    assert NotificationDispatcher(notifiers=[]).dispatch(_event(), Outcome(status=State.skipped)) == []
