from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

import dramatiq
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import Middleware, SkipMessage
from dramatiq.rate_limits import WindowRateLimiter
from dramatiq.rate_limits.backends import StubBackend

from codeautopsy.models import Job, JobStatus, utc_now
from codeautopsy.pipeline.executor import PipelineExecutor
from codeautopsy.store.records import RecordStore
from codeautopsy.telemetry.audit import AuditLogger


ACTOR_NAME = "run_pipeline"


def make_broker(redis_url: Optional[str] = None) -> dramatiq.Broker:
    """
    RedisBroker when a URL is configured, otherwise an in-process StubBroker (dev and tests).
    The broker also becomes dramatiq's global one so `dramatiq codeautopsy.jobs.worker` finds it.
    """
    if redis_url:
        from dramatiq.brokers.redis import RedisBroker

        broker: dramatiq.Broker = RedisBroker(url=redis_url)
    else:
        broker = StubBroker()
        broker.emit_after("process_boot")
    dramatiq.set_broker(broker)
    return broker


def make_window_limiter(*, redis_url: Optional[str], limit: int, window_s: int) -> WindowRateLimiter:
    """Global job-start cap shared by every worker talking to the same backend."""
    if redis_url:
        from dramatiq.rate_limits.backends import RedisBackend

        backend: Any = RedisBackend(url=redis_url)
    else:
        backend = StubBackend()
    return WindowRateLimiter(backend, "codeautopsy-job-starts", limit=int(limit), window=int(window_s))


class GlobalThrottle(Middleware):
    """
    Admission cap in front of the pipeline actor. A message arriving while the window is full goes back
    to the broker with a delay and is skipped; the deferral does not count as a retry.
    """

    def __init__(
        self,
        limiter: WindowRateLimiter,
        *,
        actor_name: str = ACTOR_NAME,
        defer_ms: int = 5_000,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.limiter = limiter
        self.actor_name = actor_name
        self.defer_ms = int(defer_ms)
        self.audit = audit

    def before_process_message(self, broker: dramatiq.Broker, message: dramatiq.Message) -> None:
        if message.actor_name != self.actor_name:
            return
        with self.limiter.acquire(raise_on_failure=False) as acquired:
            if acquired:
                return
        broker.enqueue(message, delay=self.defer_ms)
        if self.audit is not None:
            event_id = str(message.args[0]) if message.args else "-"
            self.audit.write(event_id, "job.throttled", {"job_id": message.message_id, "defer_ms": self.defer_ms})
        raise SkipMessage("global job rate limit reached")


class JobLedger(Middleware):
    """Mirrors each pipeline message's lifecycle into the `jobs` table and the audit log."""

    def __init__(self, store: RecordStore, *, actor_name: str = ACTOR_NAME, audit: Optional[AuditLogger] = None) -> None:
        self.store = store
        self.actor_name = actor_name
        self.audit = audit

    def _ours(self, message: dramatiq.Message) -> bool:
        return message.actor_name == self.actor_name

    def before_process_message(self, broker: dramatiq.Broker, message: dramatiq.Message) -> None:
        if self._ours(message):
            attempt = int(message.options.get("retries", 0)) + 1
            self.store.update_job(message.message_id, status=JobStatus.running, attempts_made=attempt)

    def after_skip_message(self, broker: dramatiq.Broker, message: dramatiq.Message) -> None:
        if self._ours(message):
            self.store.update_job(message.message_id, status=JobStatus.queued)

    def after_process_message(
        self,
        broker: dramatiq.Broker,
        message: dramatiq.Message,
        *,
        result: Any = None,
        exception: Optional[BaseException] = None,
    ) -> None:
        if not self._ours(message):
            return
        if exception is None:
            self.store.update_job(message.message_id, status=JobStatus.completed)
            return
        error = f"{type(exception).__name__}: {exception}"
        job = self.store.update_job(message.message_id, status=JobStatus.retrying, last_error=error)
        if job is not None:
            self._audit(
                job.failure_event_id,
                "job.attempt_failed",
                {"job_id": job.job_id, "attempt": job.attempts_made, "max_attempts": job.max_attempts, "error": error},
            )

    def after_nack(self, broker: dramatiq.Broker, message: dramatiq.Message) -> None:
        # Nacked = retries exhausted; the broker moves the message to its dead-letter queue.
        if not self._ours(message):
            return
        job = self.store.update_job(message.message_id, status=JobStatus.failed)
        if job is not None:
            self._audit(
                job.failure_event_id,
                "job.failed",
                {"job_id": job.job_id, "attempts": job.attempts_made, "error": job.last_error},
            )

    def _audit(self, correlation_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.write(correlation_id, event_type, payload)


class PipelineJobs:
    """
    The pipeline queue: one dramatiq actor that runs `PipelineExecutor.run` per failure event.

    Retries come from dramatiq's Retries middleware (`max_retries` extra attempts, exponential backoff
    between `min_backoff_ms` and `max_backoff_ms`). The executor re-raises collaborator errors, which is
    what triggers the retry.
    """

    def __init__(
        self,
        *,
        broker: dramatiq.Broker,
        executor: PipelineExecutor,
        store: RecordStore,
        limiter: Optional[WindowRateLimiter] = None,
        audit: Optional[AuditLogger] = None,
        queue_name: str = "codeautopsy",
        max_retries: int = 2,
        min_backoff_ms: int = 2_000,
        max_backoff_ms: int = 60_000,
        throttle_defer_ms: int = 5_000,
    ) -> None:
        self.broker = broker
        self.executor = executor
        self.store = store
        self.audit = audit
        self.queue_name = queue_name
        self.max_retries = int(max_retries)
        self._worker: Optional[dramatiq.Worker] = None

        # Throttle first: a skipped message never reaches the ledger's "running" update.
        if limiter is not None:
            broker.add_middleware(GlobalThrottle(limiter, defer_ms=throttle_defer_ms, audit=audit))
        broker.add_middleware(JobLedger(store, audit=audit))

        def run_pipeline(event_id: str, log: Optional[str] = None) -> None:
            executor.run(event_id, log_text=log)

        self.actor = dramatiq.actor(
            run_pipeline,
            broker=broker,
            actor_name=ACTOR_NAME,
            queue_name=queue_name,
            max_retries=self.max_retries,
            min_backoff=int(min_backoff_ms),
            max_backoff=int(max_backoff_ms),
        )

    def enqueue(self, failure_event_id: str, log: Optional[str] = None) -> Job:
        # Ledger row first so the worker's status updates always find it.
        message = self.actor.message(failure_event_id, log)
        job = Job(
            job_id=message.message_id,
            failure_event_id=failure_event_id,
            payload={"log": log} if log else {},
            max_attempts=self.max_retries + 1,
        )
        self.store.add_job(job)
        self.broker.enqueue(message)
        return job

    def retry_failed(self) -> List[Job]:
        """Re-enqueue every failed job as a fresh message with a full retry budget."""
        out: List[Job] = []
        for old in self.store.jobs(status=JobStatus.failed, limit=1_000):
            job = self.enqueue(old.failure_event_id, old.payload.get("log"))
            self.store.delete_job(old.job_id)
            if self.audit is not None:
                self.audit.write(old.failure_event_id, "job.retried", {"job_id": old.job_id, "new_job_id": job.job_id})
            out.append(job)
        return out

    def clean(self, *, grace_s: float = 0.0) -> int:
        """Drop completed and failed ledger rows not touched in the last `grace_s` seconds."""
        cutoff = utc_now() - timedelta(seconds=max(0.0, float(grace_s)))
        return self.store.delete_jobs(statuses=(JobStatus.completed, JobStatus.failed), older_than=cutoff)

    def counts(self) -> Dict[str, int]:
        return self.store.count_jobs_by_status()

    def recent_failures(self, *, limit: int = 10) -> List[Job]:
        return self.store.jobs(status=JobStatus.failed, limit=limit)

    def start_worker(self, *, threads: int = 2, timeout_ms: int = 1_000) -> None:
        """In-process worker; with a Redis broker, `dramatiq codeautopsy.jobs.worker` does the same job."""
        if self._worker is not None:
            return
        self._worker = dramatiq.Worker(self.broker, worker_threads=max(1, int(threads)), worker_timeout=int(timeout_ms))
        self._worker.start()

    def stop_worker(self) -> None:
        if self._worker is None:
            return
        self._worker.stop()
        self._worker = None
