from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from codeautopsy.errors import StorageError
from codeautopsy.models import FailureEvent, FixAttempt, Job, JobStatus, NotificationRecord, RateLimitRecord, utc_now


_EVENT_COLUMNS = [
    "id",
    "repo_full_name",
    "commit_sha",
    "run_id",
    "branch",
    "job_id",
    "workflow_name",
    "logs_url",
    "status",
    "file_path",
    "line_number",
    "column_number",
    "error_kind",
    "error_message",
    "language",
    "diagnosis_confidence",
    "diagnosis_source",
    "confidence_final",
    "pr_or_issue_ref",
    "error_detail",
    "raw_log_excerpt",
    "created_at",
    "updated_at",
]


def _ts(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v is not None else None


class RecordStore:
    """
    SQLite persistence for failure events, fix attempts, per-repo rate limit counters, notification
    outcomes and the job ledger. One short-lived connection per call; every write is a single-row
    statement (the ledger cleanup excepted).
    """

    def __init__(self, *, db_path: str) -> None:
        self.db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.db_path, timeout=10.0)
        con.row_factory = sqlite3.Row
        return con

    def _init_db(self) -> None:
        with self._connect() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS failure_events (
                    id TEXT PRIMARY KEY,
                    repo_full_name TEXT NOT NULL,
                    commit_sha TEXT NOT NULL,
                    run_id TEXT NOT NULL,
                    branch TEXT NOT NULL,
                    job_id TEXT,
                    workflow_name TEXT,
                    logs_url TEXT,
                    status TEXT NOT NULL,
                    file_path TEXT,
                    line_number INTEGER,
                    column_number INTEGER,
                    error_kind TEXT,
                    error_message TEXT,
                    language TEXT,
                    diagnosis_confidence REAL,
                    diagnosis_source TEXT,
                    confidence_final REAL,
                    pr_or_issue_ref TEXT,
                    error_detail TEXT,
                    raw_log_excerpt TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_events_repo ON failure_events(repo_full_name)")
            con.execute("CREATE INDEX IF NOT EXISTS idx_events_status ON failure_events(status)")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS fix_attempts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    failure_event_id TEXT NOT NULL,
                    original_code TEXT NOT NULL,
                    fixed_code TEXT NOT NULL,
                    diff_summary TEXT,
                    confidence REAL NOT NULL,
                    validation_passed INTEGER NOT NULL,
                    model_used TEXT,
                    latency_ms INTEGER,
                    applied INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_fix_attempts_event ON fix_attempts(failure_event_id)")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_limits (
                    repo_full_name TEXT PRIMARY KEY,
                    attempts_this_hour INTEGER NOT NULL,
                    hourly_reset_at TEXT NOT NULL,
                    is_blacklisted INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at TEXT,
                    version INTEGER NOT NULL DEFAULT 0
                )
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    failure_event_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    status TEXT NOT NULL,
                    sent_at TEXT NOT NULL,
                    error TEXT
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_notifications_event ON notifications(failure_event_id)")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    failure_event_id TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    attempts_made INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, updated_at)")
            con.commit()

    # ---------- failure events ----------

    @staticmethod
    def _event_row(ev: FailureEvent) -> tuple[Any, ...]:
        return (
            ev.id,
            ev.repo_full_name,
            ev.commit_sha,
            ev.run_id,
            ev.branch,
            ev.job_id,
            ev.workflow_name,
            ev.logs_url,
            ev.status.value,
            ev.file_path,
            ev.line_number,
            ev.column,
            ev.error_kind,
            ev.error_message,
            ev.language,
            ev.diagnosis_confidence,
            ev.diagnosis_source,
            ev.confidence_final,
            ev.pr_or_issue_ref,
            ev.error_detail,
            ev.raw_log_excerpt,
            _ts(ev.created_at),
            _ts(ev.updated_at),
        )

    def create_event(self, ev: FailureEvent) -> None:
        placeholders = ",".join("?" for _ in _EVENT_COLUMNS)
        with self._connect() as con:
            con.execute(
                f"INSERT INTO failure_events ({','.join(_EVENT_COLUMNS)}) VALUES ({placeholders})",
                self._event_row(ev),
            )
            con.commit()

    def save_event(self, ev: FailureEvent) -> FailureEvent:
        """Overwrite the event row, stamping updated_at. Returns the stamped copy."""
        ev = ev.model_copy(update={"updated_at": utc_now()})
        placeholders = ",".join("?" for _ in _EVENT_COLUMNS)
        with self._connect() as con:
            con.execute(
                f"INSERT OR REPLACE INTO failure_events ({','.join(_EVENT_COLUMNS)}) VALUES ({placeholders})",
                self._event_row(ev),
            )
            con.commit()
        return ev

    def get_event(self, event_id: str) -> Optional[FailureEvent]:
        with self._connect() as con:
            row = con.execute("SELECT * FROM failure_events WHERE id=?", (event_id,)).fetchone()
        return self._row_to_event(row) if row else None

    def recent_events(self, *, limit: int = 20, repo_full_name: Optional[str] = None) -> List[FailureEvent]:
        with self._connect() as con:
            if repo_full_name:
                rows = con.execute(
                    "SELECT * FROM failure_events WHERE repo_full_name=? ORDER BY created_at DESC LIMIT ?",
                    (repo_full_name, int(limit)),
                ).fetchall()
            else:
                rows = con.execute(
                    "SELECT * FROM failure_events ORDER BY created_at DESC LIMIT ?", (int(limit),)
                ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def count_events_by_status(self) -> Dict[str, int]:
        with self._connect() as con:
            rows = con.execute("SELECT status, COUNT(*) AS n FROM failure_events GROUP BY status").fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def count_events(self) -> int:
        with self._connect() as con:
            row = con.execute("SELECT COUNT(*) AS n FROM failure_events").fetchone()
        return int(row["n"])

    @staticmethod
    def _row_to_event(r: sqlite3.Row) -> FailureEvent:
        data = {k: r[k] for k in r.keys()}
        data["column"] = data.pop("column_number")
        return FailureEvent.model_validate(data)

    # ---------- fix attempts ----------

    def add_fix_attempt(self, fa: FixAttempt) -> FixAttempt:
        with self._connect() as con:
            cur = con.execute(
                """
                INSERT INTO fix_attempts (
                    failure_event_id, original_code, fixed_code, diff_summary, confidence,
                    validation_passed, model_used, latency_ms, applied, created_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    fa.failure_event_id,
                    fa.original_code,
                    fa.fixed_code,
                    fa.diff_summary,
                    float(fa.confidence),
                    1 if fa.validation_passed else 0,
                    fa.model_used,
                    fa.latency_ms,
                    1 if fa.applied else 0,
                    _ts(fa.created_at),
                ),
            )
            con.commit()
            new_id = int(cur.lastrowid or 0)
        return fa.model_copy(update={"id": new_id})

    def mark_fix_applied(self, attempt_id: int) -> None:
        with self._connect() as con:
            con.execute("UPDATE fix_attempts SET applied=1 WHERE id=?", (int(attempt_id),))
            con.commit()

    def fix_attempts(self, failure_event_id: str) -> List[FixAttempt]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT * FROM fix_attempts WHERE failure_event_id=? ORDER BY id ASC", (failure_event_id,)
            ).fetchall()
        return [
            FixAttempt(
                id=int(r["id"]),
                failure_event_id=str(r["failure_event_id"]),
                original_code=str(r["original_code"]),
                fixed_code=str(r["fixed_code"]),
                diff_summary=str(r["diff_summary"] or ""),
                confidence=float(r["confidence"]),
                validation_passed=bool(r["validation_passed"]),
                model_used=r["model_used"],
                latency_ms=r["latency_ms"],
                applied=bool(r["applied"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ---------- rate limits ----------
    # sqlite errors surface as StorageError so the limiter can take its fail-open branch on them.

    def get_rate_limit(self, repo_full_name: str) -> Optional[RateLimitRecord]:
        try:
            with self._connect() as con:
                row = con.execute("SELECT * FROM rate_limits WHERE repo_full_name=?", (repo_full_name,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"rate_limit_read_failed: {e}") from e
        if not row:
            return None
        return RateLimitRecord(
            repo_full_name=str(row["repo_full_name"]),
            attempts_this_hour=int(row["attempts_this_hour"]),
            hourly_reset_at=row["hourly_reset_at"],
            is_blacklisted=bool(row["is_blacklisted"]),
            last_attempt_at=row["last_attempt_at"],
            version=int(row["version"]),
        )

    def create_rate_limit(self, rec: RateLimitRecord) -> bool:
        """Insert if absent. False when another writer created the row first."""
        try:
            with self._connect() as con:
                cur = con.execute(
                    """
                    INSERT OR IGNORE INTO rate_limits (
                        repo_full_name, attempts_this_hour, hourly_reset_at, is_blacklisted, last_attempt_at, version
                    ) VALUES (?,?,?,?,?,?)
                    """,
                    (
                        rec.repo_full_name,
                        int(rec.attempts_this_hour),
                        _ts(rec.hourly_reset_at),
                        1 if rec.is_blacklisted else 0,
                        _ts(rec.last_attempt_at),
                        int(rec.version),
                    ),
                )
                con.commit()
                return cur.rowcount == 1
        except sqlite3.Error as e:
            raise StorageError(f"rate_limit_create_failed: {e}") from e

    def compare_and_set_rate_limit(self, rec: RateLimitRecord, *, expected_version: int) -> bool:
        """
        Write `rec` only if the stored row still carries `expected_version`; the stored version is bumped.
        False means somebody else wrote in between and the caller should re-read.
        """
        try:
            with self._connect() as con:
                cur = con.execute(
                    """
                    UPDATE rate_limits
                       SET attempts_this_hour=?, hourly_reset_at=?, is_blacklisted=?, last_attempt_at=?, version=?
                     WHERE repo_full_name=? AND version=?
                    """,
                    (
                        int(rec.attempts_this_hour),
                        _ts(rec.hourly_reset_at),
                        1 if rec.is_blacklisted else 0,
                        _ts(rec.last_attempt_at),
                        int(expected_version) + 1,
                        rec.repo_full_name,
                        int(expected_version),
                    ),
                )
                con.commit()
                return cur.rowcount == 1
        except sqlite3.Error as e:
            raise StorageError(f"rate_limit_write_failed: {e}") from e

    # ---------- notifications ----------

    def add_notification(self, rec: NotificationRecord) -> None:
        with self._connect() as con:
            con.execute(
                "INSERT INTO notifications (failure_event_id, channel, status, sent_at, error) VALUES (?,?,?,?,?)",
                (rec.failure_event_id, rec.channel, rec.status, _ts(rec.sent_at), rec.error),
            )
            con.commit()

    def notifications(self, failure_event_id: str) -> List[NotificationRecord]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT * FROM notifications WHERE failure_event_id=? ORDER BY id ASC", (failure_event_id,)
            ).fetchall()
        return [
            NotificationRecord(
                failure_event_id=str(r["failure_event_id"]),
                channel=str(r["channel"]),
                status=str(r["status"]),
                sent_at=r["sent_at"],
                error=r["error"],
            )
            for r in rows
        ]

    # ---------- job ledger ----------
    # The broker owns delivery and retries; these rows are what /status and the queue admin endpoints read.

    def add_job(self, job: Job) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO jobs (
                    job_id, failure_event_id, payload_json, attempts_made, max_attempts, status, last_error,
                    created_at, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?)
                """,
                (
                    job.job_id,
                    job.failure_event_id,
                    json.dumps(job.payload),
                    int(job.attempts_made),
                    int(job.max_attempts),
                    job.status.value,
                    job.last_error,
                    _ts(job.created_at),
                    _ts(job.updated_at),
                ),
            )
            con.commit()

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connect() as con:
            row = con.execute("SELECT * FROM jobs WHERE job_id=?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def update_job(
        self,
        job_id: str,
        *,
        status: JobStatus,
        attempts_made: Optional[int] = None,
        last_error: Optional[str] = None,
    ) -> Optional[Job]:
        """Set the status (and attempt count / error when given). None for an unknown job id."""
        sets = ["status=?", "updated_at=?"]
        params: List[Any] = [status.value, _ts(utc_now())]
        if attempts_made is not None:
            sets.append("attempts_made=?")
            params.append(int(attempts_made))
        if last_error is not None:
            sets.append("last_error=?")
            params.append(last_error[:2000])
        with self._connect() as con:
            cur = con.execute(f"UPDATE jobs SET {', '.join(sets)} WHERE job_id=?", (*params, job_id))
            con.commit()
            if cur.rowcount != 1:
                return None
        return self.get_job(job_id)

    def jobs(self, *, status: Optional[JobStatus] = None, limit: int = 20) -> List[Job]:
        with self._connect() as con:
            if status is not None:
                rows = con.execute(
                    "SELECT * FROM jobs WHERE status=? ORDER BY updated_at DESC LIMIT ?", (status.value, int(limit))
                ).fetchall()
            else:
                rows = con.execute("SELECT * FROM jobs ORDER BY updated_at DESC LIMIT ?", (int(limit),)).fetchall()
        return [self._row_to_job(r) for r in rows]

    def count_jobs_by_status(self) -> Dict[str, int]:
        with self._connect() as con:
            rows = con.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status").fetchall()
        out = {s.value: 0 for s in JobStatus}
        out.update({str(r["status"]): int(r["n"]) for r in rows})
        return out

    def delete_job(self, job_id: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM jobs WHERE job_id=?", (job_id,))
            con.commit()

    def delete_jobs(self, *, statuses: Iterable[JobStatus], older_than: datetime) -> int:
        values = [s.value for s in statuses]
        if not values:
            return 0
        marks = ",".join("?" for _ in values)
        with self._connect() as con:
            cur = con.execute(
                f"DELETE FROM jobs WHERE status IN ({marks}) AND updated_at < ?", (*values, _ts(older_than))
            )
            con.commit()
            return int(cur.rowcount or 0)

    @staticmethod
    def _row_to_job(r: sqlite3.Row) -> Job:
        return Job(
            job_id=str(r["job_id"]),
            failure_event_id=str(r["failure_event_id"]),
            payload=json.loads(r["payload_json"] or "{}"),
            attempts_made=int(r["attempts_made"]),
            max_attempts=int(r["max_attempts"]),
            status=JobStatus(str(r["status"])),
            last_error=r["last_error"],
            created_at=r["created_at"],
            updated_at=r["updated_at"],
        )
