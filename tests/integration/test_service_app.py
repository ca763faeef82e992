from __future__ import annotations

import hashlib
import hmac
import json
from pathlib import Path
from typing import Any, Dict

import dramatiq
import pytest
from fastapi.testclient import TestClient

from codeautopsy.gitops.mock_github import LocalCodeRetriever
from codeautopsy.models import Diagnosis, FixResult, RetrievedFile
from codeautopsy.service.app import Collaborators, create_app, failure_from_webhook
from codeautopsy.settings import Settings


PY_LOG = "\n".join(
    [
        "Traceback (most recent call last):",
        '  File "/home/runner/work/app/app/src/main.py", line 1',
        '    print("hello"',
        "         ^",
        "SyntaxError: '(' was never closed",
    ]
)


class _FakeFixer:
    def generate_fix(self, diagnosis: Diagnosis, original: RetrievedFile) -> FixResult:
        return FixResult(
            success=True,
            fixed_content='print("hello")\n',
            confidence=0.95,
            diff_summary="~ Line 1: Changed",
            validation_passed=True,
        )


def _settings(tmp_path: Path, **kw: Any) -> Settings:
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True, exist_ok=True)
    (repo / "src" / "main.py").write_text('print("hello"\n', encoding="utf-8")
    base: Dict[str, Any] = dict(
        github_mode="mock",
        db_path=str(tmp_path / "db" / "codeautopsy.sqlite3"),
        audit_log_path=str(tmp_path / "audit" / "audit.jsonl"),
        mock_github_dir=str(tmp_path / "mock_github"),
        mock_repo_root=str(repo),
        max_attempts_per_hour=5,
        queue_min_backoff_ms=10,
        queue_max_backoff_ms=50,
        queue_throttle_defer_ms=50,
    )
    base.update(kw)
    return Settings(**base)


def _app(tmp_path: Path, **kw: Any):
    s = _settings(tmp_path, **kw)
    collaborators = Collaborators(
        retriever=LocalCodeRetriever(s.mock_repo_root),
        fixer=_FakeFixer(),
        notifiers=[],
    )
    return create_app(s, collaborators)


def _drain(app) -> None:
    jobs = app.state.runtime.jobs
    worker = dramatiq.Worker(jobs.broker, worker_timeout=50)
    worker.start()
    try:
        jobs.broker.join(jobs.queue_name, fail_fast=False)
        worker.join()
    finally:
        worker.stop()


def _trigger(**kw: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"repo_full_name": "octo/app", "commit_sha": "c0ffee1234567", "run_id": "77", "branch": "main"}
    body.update(kw)
    return body


def _workflow_job(conclusion: str = "failure", action: str = "completed") -> Dict[str, Any]:
    return {
        "action": action,
        "repository": {"full_name": "octo/app"},
        "workflow_job": {
            "id": 901,
            "run_id": 77,
            "head_sha": "c0ffee1234567",
            "head_branch": "main",
            "name": "test",
            "workflow_name": "CI",
            "conclusion": conclusion,
            "html_url": "https://github.com/octo/app/actions/runs/77/job/901",
        },
    }


def _sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def test_health(tmp_path) -> None:
    client = TestClient(_app(tmp_path))
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["github_mode"] == "mock"


def test_trigger_is_queued_then_worker_opens_pr(tmp_path) -> None:
    app = _app(tmp_path)
    client = TestClient(app)
    r = client.post("/events/trigger", json=_trigger(log=PY_LOG))
    assert r.status_code == 202
    body = r.json()
    assert body["accepted"] is True
    assert body["remaining"] == 4

    rt = app.state.runtime
    assert rt.jobs.counts()["queued"] == 1
    _drain(app)
    assert rt.jobs.counts()["completed"] == 1

    detail = client.get(f"/events/{body['event_id']}").json()
    assert detail["event"]["status"] == "PR_CREATED"
    assert detail["event"]["file_path"] == "src/main.py"
    assert "raw_log_excerpt" not in detail["event"]
    assert len(detail["fix_attempts"]) == 1
    assert detail["fix_attempts"][0]["applied"] is True

    status = client.get("/status").json()
    assert status["total_events"] == 1
    assert status["events"] == {"PR_CREATED": 1}
    assert status["recent"][0]["id"] == body["event_id"]

    received = rt.audit.read(correlation_id=body["event_id"], event_type="event.received")
    assert received[0]["payload"]["source"] == "manual"


def test_rate_limited_repo_gets_429_and_nothing_is_stored(tmp_path) -> None:
    app = _app(tmp_path)
    rt = app.state.runtime
    for _ in range(5):
        assert rt.limiter.check_and_reserve("octo/app").allowed
    client = TestClient(app)

    r = client.post("/events/trigger", json=_trigger(log=PY_LOG))
    assert r.status_code == 429
    assert r.json()["accepted"] is False
    assert r.json()["remaining"] == 0
    assert rt.store.count_events() == 0
    assert sum(rt.jobs.counts().values()) == 0

    other = client.post("/events/trigger", json=_trigger(repo_full_name="octo/other", log=PY_LOG))
    assert other.status_code == 202


def test_webhook_requires_valid_signature(tmp_path) -> None:
    client = TestClient(_app(tmp_path, github_webhook_secret="s3cret"))
    raw = json.dumps(_workflow_job()).encode("utf-8")
    headers = {"X-GitHub-Event": "workflow_job", "Content-Type": "application/json"}

    assert client.post("/webhooks/github", content=raw, headers=headers).status_code == 401
    bad = dict(headers, **{"X-Hub-Signature-256": "sha256=" + "0" * 64})
    assert client.post("/webhooks/github", content=raw, headers=bad).status_code == 401

    good = dict(headers, **{"X-Hub-Signature-256": _sign("s3cret", raw)})
    r = client.post("/webhooks/github", content=raw, headers=good)
    assert r.status_code == 202
    assert r.json()["accepted"] is True


def test_webhook_ignores_non_failures_and_answers_ping(tmp_path) -> None:
    app = _app(tmp_path)
    client = TestClient(app)
    ping = client.post("/webhooks/github", content=b"{}", headers={"X-GitHub-Event": "ping"})
    assert ping.json()["pong"] is True

    ok = client.post(
        "/webhooks/github",
        content=json.dumps(_workflow_job(conclusion="success")).encode("utf-8"),
        headers={"X-GitHub-Event": "workflow_job"},
    )
    assert ok.status_code == 200
    assert ok.json()["ignored"] is True
    assert app.state.runtime.store.count_events() == 0

    broken = client.post("/webhooks/github", content=b"{not json", headers={"X-GitHub-Event": "workflow_job"})
    assert broken.status_code == 400


def test_webhook_event_without_log_waits_for_the_log_source(tmp_path) -> None:
    app = _app(tmp_path)
    client = TestClient(app)
    r = client.post(
        "/webhooks/github",
        content=json.dumps(_workflow_job()).encode("utf-8"),
        headers={"X-GitHub-Event": "workflow_job"},
    )
    assert r.status_code == 202
    rt = app.state.runtime
    event_id = r.json()["event_id"]
    assert rt.store.get_event(event_id).job_id == "901"

    # No log on disk yet: all three attempts fail and the job ends up failed.
    _drain(app)
    job = rt.store.get_job(r.json()["job_id"])
    assert job.status.value == "failed"
    assert job.attempts_made == 3
    assert "LogUnavailableError" in (job.last_error or "")

    status = client.get("/status").json()
    assert status["queue"]["failed"] == 1
    assert status["failed_jobs"][0]["failure_event_id"] == event_id
    assert "LogUnavailableError" in status["failed_jobs"][0]["last_error"]
    assert "payload" not in status["failed_jobs"][0]

    # The log shows up; retrying the failed jobs finishes the event.
    logs = tmp_path / "mock_github" / "logs"
    logs.mkdir(parents=True)
    (logs / "77-901.log").write_text(PY_LOG, encoding="utf-8")
    retried = client.post("/queue/retry-failed").json()
    assert retried["retried"] == 1
    _drain(app)
    assert rt.store.get_event(event_id).status.value == "PR_CREATED"
    assert client.get("/status").json()["queue"]["failed"] == 0


def test_unknown_event_is_404(tmp_path) -> None:
    client = TestClient(_app(tmp_path))
    assert client.get("/events/nope").status_code == 404


@pytest.mark.parametrize(
    "event_name,payload",
    [
        ("workflow_job", _workflow_job(action="in_progress")),
        ("workflow_job", _workflow_job(conclusion="cancelled")),
        ("push", {"action": "completed", "repository": {"full_name": "octo/app"}}),
        ("workflow_run", {"action": "completed", "workflow_run": {"conclusion": "failure"}}),
    ],
)
def test_failure_from_webhook_rejects(event_name: str, payload: Dict[str, Any]) -> None:
    assert failure_from_webhook(event_name, payload) is None


def test_failure_from_workflow_run() -> None:
    payload = {
        "action": "completed",
        "repository": {"full_name": "octo/app"},
        "workflow_run": {"id": 55, "head_sha": "abc", "head_branch": "dev", "name": "CI", "conclusion": "failure"},
    }
    fields = failure_from_webhook("workflow_run", payload)
    assert fields is not None
    assert (fields["run_id"], fields["branch"], fields["job_id"]) == ("55", "dev", None)


def test_queue_clean_drops_finished_jobs(tmp_path) -> None:
    app = _app(tmp_path)
    client = TestClient(app)
    client.post("/events/trigger", json=_trigger(log=PY_LOG))
    _drain(app)
    rt = app.state.runtime
    assert rt.jobs.counts()["completed"] == 1

    kept = client.post("/queue/clean").json()
    assert kept == {"ok": True, "removed": 0}
    removed = client.post("/queue/clean", params={"grace_s": 0}).json()
    assert removed["removed"] == 1
    assert rt.jobs.counts()["completed"] == 0
    assert rt.audit.read(event_type="queue.cleaned")


def test_blacklist_endpoints_toggle_admission(tmp_path) -> None:
    app = _app(tmp_path)
    client = TestClient(app)

    r = client.post("/repos/octo/app/blacklist")
    assert r.json() == {"ok": True, "repo": "octo/app", "blacklisted": True}
    denied = client.post("/events/trigger", json=_trigger(log=PY_LOG))
    assert denied.status_code == 429
    assert denied.json()["reason"] == "Repository is blacklisted"

    r = client.delete("/repos/octo/app/blacklist")
    assert r.json()["blacklisted"] is False
    assert client.post("/events/trigger", json=_trigger(log=PY_LOG)).status_code == 202
