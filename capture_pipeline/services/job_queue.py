"""Pipeline job queue.

Jobs are persisted in SQLite so they survive restarts. The queue owns the job
lifecycle and the retry policy; record state is projected from it by the
orchestrator. At most one job per record is ever active.
"""

from __future__ import annotations

import json
import logging
import random
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from capture_pipeline.config import Settings, settings
from capture_pipeline.database import connect
from capture_pipeline.errors import PipelineError, StorageError
from capture_pipeline.models import Job, JobStatus, Stage, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

PRIORITY_INTERACTIVE = 1
PRIORITY_DEFAULT = 5
PRIORITY_BACKFILL = 9

_OUTSTANDING = (JobStatus.PENDING.value, JobStatus.ACTIVE.value, JobStatus.RETRY_PENDING.value)


@dataclass
class RetryPolicy:
    """Exponential backoff with multiplicative jitter."""

    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: tuple = (0.8, 1.2)
    rng: Callable[[float, float], float] = field(default=random.uniform, repr=False)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RetryPolicy":
        config = config or settings
        return cls(base_delay=config.retry_base_delay_seconds, max_delay=config.retry_max_delay_seconds)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        raw = min(self.max_delay, self.base_delay * 2 ** (max(1, attempt) - 1))
        return raw * self.rng(*self.jitter)


class JobQueue:
    """SQLite-backed queue of per-stage pipeline jobs."""

    def __init__(self, db_path: Optional[str] = None, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.db_path = str(db_path or settings.db_path)
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._lock = threading.Lock()
        self._ensure_table()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        try:
            return connect(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Job queue unavailable: {e}") from e

    def _ensure_table(self) -> None:
        conn = self._connect()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS pipeline_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL UNIQUE,
                record_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                stage TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 5,
                status TEXT NOT NULL DEFAULT 'pending',
                attempt INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                record_version INTEGER NOT NULL,
                payload TEXT,
                last_error TEXT,
                next_retry_at TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_status ON pipeline_jobs (status, priority ASC, created_at ASC)"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_record ON pipeline_jobs (record_id, status)")
        conn.commit()
        conn.close()

    def _set_status(self, job_id: str, status: JobStatus, **columns: Any) -> None:
        assignments = ", ".join(f"{name} = ?" for name in ["status", *columns])
        conn = self._connect()
        try:
            conn.execute(
                f"UPDATE pipeline_jobs SET {assignments} WHERE job_id = ?",
                (status.value, *columns.values(), job_id),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to update job {job_id}: {e}") from e
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def enqueue(
        self,
        record_id: str,
        owner_id: str,
        stage: Stage,
        *,
        record_version: int,
        priority: int = PRIORITY_DEFAULT,
        max_attempts: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Insert a new pending job and return it."""

        job_id = uuid.uuid4().hex
        now = utcnow().isoformat()
        attempts = max_attempts if max_attempts is not None else settings.ai_max_attempts
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO pipeline_jobs (
                    job_id, record_id, owner_id, stage, priority, status, attempt,
                    max_attempts, record_version, payload, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    record_id,
                    owner_id,
                    stage.value,
                    priority,
                    JobStatus.PENDING.value,
                    attempts,
                    record_version,
                    json.dumps(payload) if payload else None,
                    now,
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to enqueue {stage.value} job for {record_id}: {e}") from e
        finally:
            conn.close()
        logger.debug(f"Enqueued {stage.value} job {job_id} for record {record_id} (priority {priority})")
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Optional[Job]:
        conn = self._connect()
        row = conn.execute("SELECT * FROM pipeline_jobs WHERE job_id = ?", (job_id,)).fetchone()
        conn.close()
        if not row:
            return None
        return self._row_to_job(row)

    def get_active_job_for_record(self, record_id: str) -> Optional[Job]:
        conn = self._connect()
        row = conn.execute(
            "SELECT * FROM pipeline_jobs WHERE record_id = ? AND status = ? LIMIT 1",
            (record_id, JobStatus.ACTIVE.value),
        ).fetchone()
        conn.close()
        if not row:
            return None
        return self._row_to_job(row)

    def claim_next(self, now: Optional[datetime] = None) -> Optional[Job]:
        """Return the next eligible job and transition it to active.

        A job is eligible when it is pending, or waiting on a retry that is now
        due, and no other job for the same record is active.
        """

        now_iso = (now or utcnow()).isoformat()
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    """
                    SELECT * FROM pipeline_jobs AS j
                    WHERE (j.status = ? OR (j.status = ? AND j.next_retry_at <= ?))
                      AND NOT EXISTS (
                          SELECT 1 FROM pipeline_jobs AS a
                          WHERE a.record_id = j.record_id AND a.status = ?
                      )
                    ORDER BY j.priority ASC, j.created_at ASC, j.id ASC
                    LIMIT 1
                    """,
                    (
                        JobStatus.PENDING.value,
                        JobStatus.RETRY_PENDING.value,
                        now_iso,
                        JobStatus.ACTIVE.value,
                    ),
                ).fetchone()
                if not row:
                    return None

                conn.execute(
                    """
                    UPDATE pipeline_jobs
                    SET status = ?, attempt = attempt + 1, started_at = ?, next_retry_at = NULL
                    WHERE job_id = ?
                    """,
                    (JobStatus.ACTIVE.value, now_iso, row["job_id"]),
                )
                conn.commit()
                claimed = conn.execute("SELECT * FROM pipeline_jobs WHERE job_id = ?", (row["job_id"],)).fetchone()
            finally:
                conn.close()
        return self._row_to_job(claimed)

    def mark_completed(self, job_id: str, note: Optional[str] = None) -> None:
        self._set_status(job_id, JobStatus.COMPLETED, completed_at=utcnow().isoformat(), last_error=note)

    def mark_retry(
        self,
        job_id: str,
        delay: float,
        error: Optional[str] = None,
        *,
        record_version: Optional[int] = None,
    ) -> Optional[Job]:
        """Schedule another attempt after delay seconds."""
        retry_at = (utcnow() + timedelta(seconds=delay)).isoformat()
        columns: Dict[str, Any] = {"next_retry_at": retry_at, "last_error": error}
        if record_version is not None:
            columns["record_version"] = record_version
        self._set_status(job_id, JobStatus.RETRY_PENDING, **columns)
        return self.get_job(job_id)

    def mark_failed(self, job_id: str, error: Optional[str] = None) -> None:
        self._set_status(job_id, JobStatus.FAILED, completed_at=utcnow().isoformat(), last_error=error)

    def fail_or_retry(self, job: Job, error: PipelineError, *, record_version: Optional[int] = None) -> Job:
        """Apply the retry policy to a failed attempt and return the updated job."""
        if error.retryable and job.attempts_left > 0:
            delay = self.retry_policy.delay(job.attempt)
            if getattr(error, "retry_after", None):
                delay = min(self.retry_policy.max_delay, max(delay, error.retry_after))
            logger.info(
                f"Retrying {job.stage.value} job {job.job_id} in {delay:.2f}s "
                f"(attempt {job.attempt}/{job.max_attempts}): {error.message}"
            )
            return self.mark_retry(job.job_id, delay, error.message, record_version=record_version)
        reason = error.message if not error.retryable else f"Retries exhausted: {error.message}"
        logger.warning(f"{job.stage.value} job {job.job_id} failed: {reason}")
        self.mark_failed(job.job_id, reason)
        return self.get_job(job.job_id)

    def cancel_pending(self, record_id: str, reason: str = "Cancelled") -> int:
        """Fail every not-yet-running job of a record. Active jobs are left alone."""
        with self._lock:
            conn = self._connect()
            try:
                cur = conn.execute(
                    """
                    UPDATE pipeline_jobs
                    SET status = ?, completed_at = ?, last_error = ?
                    WHERE record_id = ? AND status IN (?, ?)
                    """,
                    (
                        JobStatus.FAILED.value,
                        utcnow().isoformat(),
                        reason,
                        record_id,
                        JobStatus.PENDING.value,
                        JobStatus.RETRY_PENDING.value,
                    ),
                )
                conn.commit()
                return cur.rowcount
            finally:
                conn.close()

    def recover_interrupted(self) -> int:
        """Return jobs left active by a crash or shutdown to pending."""
        with self._lock:
            conn = self._connect()
            try:
                cur = conn.execute(
                    """
                    UPDATE pipeline_jobs
                    SET status = ?, attempt = MAX(0, attempt - 1), started_at = NULL
                    WHERE status = ?
                    """,
                    (JobStatus.PENDING.value, JobStatus.ACTIVE.value),
                )
                conn.commit()
                recovered = cur.rowcount
            finally:
                conn.close()
        if recovered:
            logger.info(f"Recovered {recovered} interrupted pipeline jobs")
        return recovered

    def next_retry_due(self) -> Optional[datetime]:
        conn = self._connect()
        row = conn.execute(
            "SELECT MIN(next_retry_at) AS due FROM pipeline_jobs WHERE status = ?",
            (JobStatus.RETRY_PENDING.value,),
        ).fetchone()
        conn.close()
        return parse_timestamp(row["due"]) if row and row["due"] else None

    def counts(self) -> Dict[str, int]:
        conn = self._connect()
        rows = conn.execute("SELECT status, COUNT(*) AS total FROM pipeline_jobs GROUP BY status").fetchall()
        conn.close()
        result = {status.value: 0 for status in JobStatus}
        result.update({row["status"]: row["total"] for row in rows})
        return result

    def has_outstanding(self) -> bool:
        conn = self._connect()
        row = conn.execute(
            f"SELECT 1 FROM pipeline_jobs WHERE status IN ({', '.join('?' * len(_OUTSTANDING))}) LIMIT 1",
            _OUTSTANDING,
        ).fetchone()
        conn.close()
        return row is not None

    def list_jobs(
        self,
        record_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
    ) -> List[Job]:
        clauses = []
        params: list = []
        if record_id is not None:
            clauses.append("record_id = ?")
            params.append(record_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        rows = conn.execute(
            f"SELECT * FROM pipeline_jobs {where} ORDER BY created_at DESC, id DESC LIMIT ?",
            (*params, limit),
        ).fetchall()
        conn.close()
        return [self._row_to_job(row) for row in rows]

    def purge_finished(self, older_than: timedelta = timedelta(days=7)) -> int:
        cutoff = (utcnow() - older_than).isoformat()
        with self._lock:
            conn = self._connect()
            try:
                cur = conn.execute(
                    "DELETE FROM pipeline_jobs WHERE status IN (?, ?) AND completed_at < ?",
                    (JobStatus.COMPLETED.value, JobStatus.FAILED.value, cutoff),
                )
                conn.commit()
                return cur.rowcount
            finally:
                conn.close()

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        payload = json.loads(row["payload"]) if row["payload"] else None
        return Job(
            job_id=row["job_id"],
            record_id=row["record_id"],
            owner_id=row["owner_id"],
            stage=Stage(row["stage"]),
            priority=row["priority"],
            status=JobStatus(row["status"]),
            attempt=row["attempt"],
            max_attempts=row["max_attempts"],
            record_version=row["record_version"],
            created_at=parse_timestamp(row["created_at"]),
            next_retry_at=parse_timestamp(row["next_retry_at"]),
            last_error=row["last_error"],
            payload=payload,
            started_at=parse_timestamp(row["started_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
        )
