from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from codeautopsy.collaborators import Notifier
from codeautopsy.models import FailureEvent, NotificationRecord, Outcome
from codeautopsy.store.records import RecordStore
from codeautopsy.telemetry.audit import AuditLogger


@dataclass
class NotificationDispatcher:
    """
    Fans an outcome out to every configured channel as independent best-effort tasks, joined with a
    bounded timeout. A slow or failing channel is recorded as FAILED and never affects the others.
    """

    notifiers: Sequence[Notifier]
    store: Optional[RecordStore] = None
    audit: Optional[AuditLogger] = None
    timeout_s: float = 10.0
    _pool: ThreadPoolExecutor = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max(2, 2 * len(self.notifiers)), thread_name_prefix="codeautopsy_notify")

    def dispatch(self, event: FailureEvent, outcome: Outcome) -> List[NotificationRecord]:
        if not self.notifiers:
            return []
        futures: Dict[Future[None], str] = {
            self._pool.submit(n.notify, event, outcome): getattr(n, "name", type(n).__name__) for n in self.notifiers
        }
        # One shared deadline for all channels.
        _, not_done = wait(futures.keys(), timeout=self.timeout_s)

        records: List[NotificationRecord] = []
        for fut, channel in futures.items():
            if fut in not_done:
                fut.cancel()
                records.append(self._record(event, channel, error=f"timed out after {self.timeout_s:.1f}s"))
                continue
            err = fut.exception()
            records.append(self._record(event, channel, error=None if err is None else f"{type(err).__name__}: {err}"))
        return records

    def _record(self, event: FailureEvent, channel: str, *, error: Optional[str]) -> NotificationRecord:
        rec = NotificationRecord(
            failure_event_id=event.id,
            channel=channel,
            status="SENT" if error is None else "FAILED",
            error=error,
        )
        if self.store is not None:
            self.store.add_notification(rec)
        if self.audit is not None:
            self.audit.write(
                event.id,
                "notify.sent" if error is None else "notify.failed",
                {"channel": channel, "status": event.status.value, "error": error},
            )
        return rec

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
