from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from codeautopsy.collaborators import AIDiagnosisClient, CodeRetriever, FixGenerator, LogSource, Notifier, Publisher
from codeautopsy.gitops.adapters import GitHubAccess, GitHubCodeRetriever, GitHubLogSource, GitHubPublisher
from codeautopsy.gitops.mock_github import LocalCodeRetriever, MockLogSource, MockPublisher
from codeautopsy.jobs.queue import PipelineJobs, make_broker, make_window_limiter
from codeautopsy.llm.chat_client import ChatClient
from codeautopsy.llm.diagnoser import LLMDiagnoser
from codeautopsy.llm.fixer import DisabledFixGenerator, LLMFixGenerator
from codeautopsy.models import FailureEvent, Job
from codeautopsy.notify.dispatch import NotificationDispatcher
from codeautopsy.notify.webhooks import WebhookNotifier
from codeautopsy.pipeline.executor import PipelineExecutor
from codeautopsy.pipeline.states import TransitionPolicy
from codeautopsy.policy.gate import ProtectedPathGate
from codeautopsy.policy.rate_limit import RateLimiter
from codeautopsy.scout.merger import Scout
from codeautopsy.settings import Settings
from codeautopsy.store.records import RecordStore
from codeautopsy.telemetry.audit import AuditLogger


@dataclass
class Collaborators:
    """Overrides for the external collaborators. Anything left None is built from settings."""

    log_source: Optional[LogSource] = None
    retriever: Optional[CodeRetriever] = None
    fixer: Optional[FixGenerator] = None
    publisher: Optional[Publisher] = None
    ai: Optional[AIDiagnosisClient] = None
    notifiers: Optional[Sequence[Notifier]] = None


@dataclass
class Runtime:
    settings: Settings
    audit: AuditLogger
    store: RecordStore
    jobs: PipelineJobs
    limiter: RateLimiter
    executor: PipelineExecutor


class TriggerRequest(BaseModel):
    repo_full_name: str
    commit_sha: str
    run_id: str
    branch: str = "unknown"
    job_id: Optional[str] = None
    workflow_name: Optional[str] = None
    logs_url: Optional[str] = None
    # Inline build log; when absent the worker fetches it from the log source.
    log: Optional[str] = None


def _default_collaborators(s: Settings) -> Collaborators:
    c = Collaborators()
    if s.github_mode == "real":
        if not s.github_token:
            raise ValueError("CODEAUTOPSY_GITHUB_TOKEN is required when github_mode=real")
        access = GitHubAccess(token=s.github_token, api_base=s.github_api_base, timeout_s=s.github_timeout_s)
        c.log_source = GitHubLogSource(access)
        c.retriever = GitHubCodeRetriever(access)
        c.publisher = GitHubPublisher(access)
    else:
        c.log_source = MockLogSource(s.mock_github_dir)
        c.retriever = LocalCodeRetriever(s.mock_repo_root)
        c.publisher = MockPublisher(root_dir=s.mock_github_dir, public_base_url=s.public_base_url)

    if s.llm_api_key:
        chat = ChatClient(api_key=s.llm_api_key, base_url=s.llm_base_url, timeout_s=s.llm_timeout_s)
        c.ai = LLMDiagnoser(client=chat, model=s.llm_model)
        c.fixer = LLMFixGenerator(
            client=chat,
            model=s.llm_fix_model or s.llm_model,
            complex_model=s.llm_complex_model,
            max_tokens=s.llm_max_tokens,
            ai_validation=s.llm_ai_validation,
        )
    else:
        c.fixer = DisabledFixGenerator()

    notifiers: List[Notifier] = []
    if s.slack_webhook_url:
        notifiers.append(WebhookNotifier(name="slack", url=s.slack_webhook_url, timeout_s=s.notify_timeout_s))
    if s.discord_webhook_url:
        notifiers.append(WebhookNotifier(name="discord", url=s.discord_webhook_url, timeout_s=s.notify_timeout_s))
    c.notifiers = notifiers
    return c


def build_runtime(s: Settings, overrides: Optional[Collaborators] = None) -> Runtime:
    defaults = _default_collaborators(s)
    o = overrides or Collaborators()

    audit = AuditLogger(s.audit_log_path)
    store = RecordStore(db_path=s.db_path)
    notifiers = o.notifiers if o.notifiers is not None else (defaults.notifiers or [])
    executor = PipelineExecutor(
        store=store,
        scout=Scout(
            ai=o.ai if o.ai is not None else defaults.ai,
            audit=audit,
            max_log_chars=s.ai_max_log_chars,
            verify_context_lines=s.ai_verify_context_lines,
        ),
        log_source=o.log_source or defaults.log_source,
        retriever=o.retriever or defaults.retriever,
        fixer=o.fixer or defaults.fixer,
        publisher=o.publisher or defaults.publisher,
        dispatcher=NotificationDispatcher(notifiers=notifiers, store=store, audit=audit, timeout_s=s.notify_timeout_s),
        audit=audit,
        policy=TransitionPolicy(
            threshold=s.min_confidence_for_pr,
            gate=ProtectedPathGate(tuple(s.protected_path_list())),
        ),
        issue_floor=s.min_confidence_for_issue,
    )
    jobs = PipelineJobs(
        broker=make_broker(s.redis_url),
        executor=executor,
        store=store,
        limiter=make_window_limiter(redis_url=s.redis_url, limit=s.queue_rate_max_jobs, window_s=s.queue_rate_window_s),
        audit=audit,
        queue_name=s.queue_name,
        max_retries=s.queue_max_retries,
        min_backoff_ms=s.queue_min_backoff_ms,
        max_backoff_ms=s.queue_max_backoff_ms,
        throttle_defer_ms=s.queue_throttle_defer_ms,
    )
    return Runtime(
        settings=s,
        audit=audit,
        store=store,
        jobs=jobs,
        limiter=RateLimiter(store=store, max_attempts_per_hour=s.max_attempts_per_hour, audit=audit),
        executor=executor,
    )


def verify_github_signature(signature: Optional[str], body: bytes, secret: Optional[str]) -> None:
    """X-Hub-Signature-256 check. No secret configured -> nothing to check."""
    if not secret:
        return
    if not signature:
        raise HTTPException(status_code=401, detail="Missing X-Hub-Signature-256 header")
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def failure_from_webhook(event_name: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    FailureEvent fields for a failed `workflow_job` / `workflow_run` delivery; None for anything else
    (other events, in-progress deliveries, successful conclusions).
    """
    if payload.get("action") != "completed":
        return None
    repo = (payload.get("repository") or {}).get("full_name")
    if not repo:
        return None

    if event_name == "workflow_job":
        job = payload.get("workflow_job") or {}
        if job.get("conclusion") != "failure":
            return None
        return {
            "repo_full_name": repo,
            "commit_sha": str(job.get("head_sha") or ""),
            "run_id": str(job.get("run_id") or ""),
            "job_id": str(job["id"]) if job.get("id") is not None else None,
            "branch": job.get("head_branch") or "unknown",
            "workflow_name": job.get("workflow_name") or job.get("name"),
            "logs_url": job.get("html_url"),
        }

    if event_name == "workflow_run":
        run = payload.get("workflow_run") or {}
        if run.get("conclusion") != "failure":
            return None
        return {
            "repo_full_name": repo,
            "commit_sha": str(run.get("head_sha") or ""),
            "run_id": str(run.get("id") or ""),
            "job_id": None,
            "branch": run.get("head_branch") or "unknown",
            "workflow_name": run.get("name"),
            "logs_url": run.get("html_url"),
        }
    return None


def _admit(rt: Runtime, fields: Dict[str, Any], *, source: str, log: Optional[str] = None) -> JSONResponse:
    """
    Per-repo rate limit first; only an admitted request creates the FailureEvent row and its job.
    """
    event_id = str(uuid.uuid4())
    repo = fields["repo_full_name"]
    decision = rt.limiter.check_and_reserve(repo, correlation_id=event_id)
    if not decision.allowed:
        return JSONResponse(
            {"accepted": False, "repo": repo, "reason": decision.reason, "remaining": decision.remaining},
            status_code=429,
        )

    ev = FailureEvent(id=event_id, **fields)
    rt.store.create_event(ev)
    job = rt.jobs.enqueue(ev.id, log)
    rt.audit.write(
        ev.id,
        "event.received",
        {
            "source": source,
            "repo": repo,
            "run_id": ev.run_id,
            "job_id": ev.job_id,
            "commit_sha": ev.commit_sha,
            "queue_job_id": job.job_id,
            "remaining": decision.remaining,
        },
    )
    return JSONResponse(
        {"accepted": True, "event_id": ev.id, "job_id": job.job_id, "remaining": decision.remaining},
        status_code=202,
    )


def _event_view(ev: FailureEvent) -> Dict[str, Any]:
    return ev.model_dump(mode="json", exclude={"raw_log_excerpt"})


def _job_view(job: Job) -> Dict[str, Any]:
    # The inline log can be large; the event detail already carries an excerpt.
    return job.model_dump(mode="json", exclude={"payload"})


def create_app(settings: Settings | None = None, collaborators: Optional[Collaborators] = None) -> FastAPI:
    """
    App factory used by uvicorn (`--factory`) and tests. Collaborators not passed in are built from
    settings (mock or real GitHub mode, LLM when a key is configured).
    """
    s = settings or Settings()
    rt = build_runtime(s, collaborators)

    app = FastAPI(title="CodeAutopsy", version="0.1.0")
    app.state.settings = s
    app.state.runtime = rt

    @app.on_event("startup")
    def _startup() -> None:
        if s.workers_enabled:
            rt.jobs.start_worker(threads=s.workers)

    @app.on_event("shutdown")
    def _shutdown() -> None:
        rt.jobs.stop_worker()
        if rt.executor.dispatcher is not None:
            rt.executor.dispatcher.close()

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "version": "0.1.0", "github_mode": s.github_mode}

    @app.post("/webhooks/github")
    async def github_webhook(request: Request) -> JSONResponse:
        body = await request.body()
        verify_github_signature(request.headers.get("X-Hub-Signature-256"), body, s.github_webhook_secret)
        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="invalid JSON payload")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="invalid JSON payload")

        event_name = request.headers.get("X-GitHub-Event", "")
        if event_name == "ping":
            return JSONResponse({"ok": True, "pong": True})
        fields = failure_from_webhook(event_name, payload)
        if fields is None:
            return JSONResponse({"ok": True, "ignored": True, "event": event_name})
        return _admit(rt, fields, source=f"github:{event_name}")

    @app.post("/events/trigger")
    def trigger(req: TriggerRequest) -> JSONResponse:
        fields = req.model_dump(exclude={"log"})
        return _admit(rt, fields, source="manual", log=req.log)

    @app.get("/status")
    def status(limit: int = 20) -> Dict[str, Any]:
        return {
            "queue": rt.jobs.counts(),
            "failed_jobs": [_job_view(j) for j in rt.jobs.recent_failures(limit=10)],
            "events": rt.store.count_events_by_status(),
            "total_events": rt.store.count_events(),
            "recent": [_event_view(ev) for ev in rt.store.recent_events(limit=limit)],
        }

    @app.post("/queue/retry-failed")
    def queue_retry_failed() -> Dict[str, Any]:
        jobs = rt.jobs.retry_failed()
        return {"ok": True, "retried": len(jobs), "jobs": [_job_view(j) for j in jobs]}

    @app.post("/queue/clean")
    def queue_clean(grace_s: Optional[float] = None) -> Dict[str, Any]:
        grace = s.queue_clean_grace_s if grace_s is None else grace_s
        removed = rt.jobs.clean(grace_s=grace)
        rt.audit.write("-", "queue.cleaned", {"removed": removed, "grace_s": grace})
        return {"ok": True, "removed": removed}

    @app.post("/repos/{owner}/{name}/blacklist")
    def blacklist_repo(owner: str, name: str) -> Dict[str, Any]:
        repo = f"{owner}/{name}"
        rec = rt.limiter.blacklist(repo)
        rt.audit.write("-", "repo.blacklisted", {"repo": repo})
        return {"ok": True, "repo": repo, "blacklisted": rec.is_blacklisted}

    @app.delete("/repos/{owner}/{name}/blacklist")
    def unblacklist_repo(owner: str, name: str) -> Dict[str, Any]:
        repo = f"{owner}/{name}"
        rec = rt.limiter.unblacklist(repo)
        rt.audit.write("-", "repo.unblacklisted", {"repo": repo})
        return {"ok": True, "repo": repo, "blacklisted": rec.is_blacklisted}

    @app.get("/events/{event_id}")
    def event_detail(event_id: str) -> Dict[str, Any]:
        ev = rt.store.get_event(event_id)
        if ev is None:
            raise HTTPException(status_code=404, detail="event not found")
        return {
            "event": _event_view(ev),
            "fix_attempts": [fa.model_dump(mode="json") for fa in rt.store.fix_attempts(event_id)],
            "notifications": [n.model_dump(mode="json") for n in rt.store.notifications(event_id)],
        }

    return app
