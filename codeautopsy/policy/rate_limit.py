from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from codeautopsy.errors import StorageError
from codeautopsy.models import RateLimitDecision, RateLimitRecord, utc_now
from codeautopsy.store.records import RecordStore
from codeautopsy.telemetry.audit import AuditLogger


WINDOW = timedelta(hours=1)

REASON_BLACKLISTED = "Repository is blacklisted"
REASON_EXCEEDED = "Rate limit exceeded"


@dataclass(frozen=True)
class RateLimiter:
    """
    Per-repository attempt counter with a lazily reset hourly window and a blacklist.

    check_and_reserve() both checks and, when allowed, counts the attempt, using a compare-and-set on the
    stored record so concurrent callers cannot both take the last slot.

    Fail open: if the store cannot be read or written, the attempt is allowed (and audited as
    ratelimit.fail_open).
    The same applies when CAS conflicts persist past max_cas_retries.
    """

    store: RecordStore
    max_attempts_per_hour: int = 5
    audit: Optional[AuditLogger] = None
    max_cas_retries: int = 5
    clock: Callable[[], datetime] = field(default=utc_now)

    def check_and_reserve(self, repo_full_name: str, *, correlation_id: str = "-") -> RateLimitDecision:
        try:
            decision = self._check_and_reserve(repo_full_name)
        except StorageError as e:
            return self._fail_open(repo_full_name, correlation_id, f"storage_error: {e}")
        if decision is None:
            return self._fail_open(repo_full_name, correlation_id, "cas_conflict_retries_exhausted")
        if not decision.allowed and self.audit is not None:
            self.audit.write(
                correlation_id,
                "ratelimit.denied",
                {"repo": repo_full_name, "reason": decision.reason, "remaining": decision.remaining},
            )
        return decision

    def _check_and_reserve(self, repo: str) -> Optional[RateLimitDecision]:
        for _ in range(max(1, int(self.max_cas_retries))):
            now = self.clock()
            rec = self.store.get_rate_limit(repo)
            if rec is None:
                self.store.create_rate_limit(
                    RateLimitRecord(repo_full_name=repo, attempts_this_hour=0, hourly_reset_at=now + WINDOW)
                )
                # Either we created it or a concurrent caller did; read whichever won.
                rec = self.store.get_rate_limit(repo)
                if rec is None:
                    raise StorageError("rate_limit_row_missing_after_create")

            if rec.is_blacklisted:
                return RateLimitDecision(allowed=False, remaining=0, reason=REASON_BLACKLISTED)

            attempts = rec.attempts_this_hour
            reset_at = rec.hourly_reset_at
            if now > reset_at:
                attempts = 0
                reset_at = now + WINDOW

            if attempts >= self.max_attempts_per_hour:
                return RateLimitDecision(allowed=False, remaining=0, reason=REASON_EXCEEDED)

            reserved = rec.model_copy(
                update={"attempts_this_hour": attempts + 1, "hourly_reset_at": reset_at, "last_attempt_at": now}
            )
            if self.store.compare_and_set_rate_limit(reserved, expected_version=rec.version):
                return RateLimitDecision(allowed=True, remaining=self.max_attempts_per_hour - (attempts + 1))
        return None

    def _fail_open(self, repo: str, correlation_id: str, why: str) -> RateLimitDecision:
        if self.audit is not None:
            self.audit.write(correlation_id, "ratelimit.fail_open", {"repo": repo, "error": why})
        return RateLimitDecision(allowed=True, remaining=1, reason=None)

    def set_blacklisted(self, repo_full_name: str, blacklisted: bool) -> RateLimitRecord:
        for _ in range(max(1, int(self.max_cas_retries))):
            rec = self.store.get_rate_limit(repo_full_name)
            if rec is None:
                self.store.create_rate_limit(
                    RateLimitRecord(
                        repo_full_name=repo_full_name,
                        attempts_this_hour=0,
                        hourly_reset_at=self.clock() + WINDOW,
                    )
                )
                continue
            updated = rec.model_copy(update={"is_blacklisted": bool(blacklisted)})
            if self.store.compare_and_set_rate_limit(updated, expected_version=rec.version):
                return updated.model_copy(update={"version": rec.version + 1})
        raise StorageError(f"could not update blacklist flag for {repo_full_name}")

    def blacklist(self, repo_full_name: str) -> RateLimitRecord:
        return self.set_blacklisted(repo_full_name, True)

    def unblacklist(self, repo_full_name: str) -> RateLimitRecord:
        return self.set_blacklisted(repo_full_name, False)
