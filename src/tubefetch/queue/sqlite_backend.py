"""SQLite implementation of QueueBackend.

This module provides the local-first, crash-safe queue implementation using:
- sqlite-utils for schema management and row queries
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic lease
- Exponential backoff retry for database lock handling
- One connection per thread (workers, API handlers and heartbeats each get their own)
"""

import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlite_utils import Database

from ..exceptions import QueueUnavailable, ValidationError
from .backends import QueueBackend
from .models import (
    LEASE_LOST,
    NOT_FOUND,
    DeadLetter,
    JobKind,
    JobProgress,
    JobRecord,
    JobResult,
    JobStatus,
)

logger = logging.getLogger(__name__)

# SQLite schema SQL
SCHEMA_SQL = """
-- Job records
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    priority INTEGER DEFAULT 0,
    attempt_count INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 3,
    progress TEXT,
    result TEXT,
    last_error TEXT,
    worker_id TEXT,
    created_at TEXT NOT NULL,
    available_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT,
    last_heartbeat TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(status, priority DESC, created_at ASC);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);

-- Jobs that exhausted their retry budget
CREATE TABLE IF NOT EXISTS dead_letters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    attempts INTEGER NOT NULL,
    error TEXT,
    failed_at TEXT NOT NULL
);
"""

JSON_FIELDS = ("payload", "progress", "result")
DATETIME_FIELDS = (
    "created_at",
    "available_at",
    "started_at",
    "completed_at",
    "updated_at",
    "last_heartbeat",
)


def _ts(value: datetime) -> str:
    # Fixed width so ISO strings compare correctly in SQL
    return value.isoformat(timespec="microseconds")


def _now() -> datetime:
    return datetime.now()


class SQLiteQueue(QueueBackend):
    """SQLite-based queue with atomic lease operations.

    Features:
    - Atomic dequeue via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Retry scheduling through ``available_at``
    - Dead-letter table for terminally failed jobs
    - Automatic state transition logging

    Concurrency safety:
    - BEGIN IMMEDIATE ensures write lock from transaction start
    - Prevents race where multiple workers claim same job
    """

    def __init__(
        self,
        db_path: str,
        max_attempts: int = 3,
        backoff_delay_s: float = 5.0,
        remove_on_complete_age_s: Optional[int] = None,
    ):
        """Initialize queue database.

        Args:
            db_path: Path to SQLite database file
            max_attempts: Attempts granted to newly enqueued jobs
            backoff_delay_s: Base delay; attempt n waits base * 2**(n-1)
            remove_on_complete_age_s: Completed jobs older than this read as not-found

        Creates schema if database doesn't exist.
        Enables WAL mode for concurrent performance.
        """
        self.db_path = Path(db_path)
        self.max_attempts = max_attempts
        self.backoff_delay_s = backoff_delay_s
        self.remove_on_complete_age_s = remove_on_complete_age_s
        self._local = threading.local()

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.db.executescript(SCHEMA_SQL)
        except (OSError, sqlite3.Error) as e:
            raise QueueUnavailable(f"Cannot open queue database {self.db_path}: {e}") from e

    @classmethod
    def from_config(cls, config) -> "SQLiteQueue":
        """Build a queue from a QueueConfig."""
        return cls(
            config.db_path,
            max_attempts=config.max_attempts,
            backoff_delay_s=config.backoff_delay_s,
            remove_on_complete_age_s=config.remove_on_complete_age_s,
        )

    @property
    def db(self) -> Database:
        """Per-thread sqlite-utils Database."""
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(str(self.db_path), timeout=30, isolation_level=None)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
            db = Database(conn)
            self._local.db = db
        return db

    def close(self) -> None:
        """Close this thread's connection."""
        db = getattr(self._local, "db", None)
        if db is not None:
            db.conn.close()
            self._local.db = None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, retrying lock contention with backoff."""
        conn = self.db.conn
        for attempt in range(3):
            try:
                conn.execute("BEGIN IMMEDIATE")
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < 2:
                    # Exponential backoff: 100ms, 200ms
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise

    # ------------------------------------------------------------------ writes

    def enqueue(self, kind: str, payload: Dict[str, Any], priority: int = 0) -> str:
        """Persist a new waiting job.

        Raises:
            ValidationError: If ``kind`` is not a known job kind
            QueueUnavailable: If the database cannot be written
        """
        try:
            kind_value = JobKind(kind).value
        except ValueError as e:
            raise ValidationError(f"Unsupported job kind: {kind}") from e

        job_id = uuid.uuid4().hex
        now = _ts(_now())

        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO jobs (
                        job_id, kind, payload, status, priority, attempt_count,
                        max_attempts, progress, created_at, available_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                    """,
                    (
                        job_id,
                        kind_value,
                        json.dumps(payload),
                        JobStatus.WAITING.value,
                        priority,
                        self.max_attempts,
                        JobProgress().model_dump_json(exclude_none=True),
                        now,
                        now,
                        now,
                    ),
                )
                self._log_transition(conn, job_id, None, JobStatus.WAITING.value)
        except sqlite3.Error as e:
            raise QueueUnavailable(f"Unable to enqueue {kind_value} job: {e}") from e

        logger.info("Enqueued %s job %s", kind_value, job_id)
        return job_id

    def dequeue(self, worker_id: str) -> Optional[JobRecord]:
        """Atomically lease the next due job and mark it active.

        Atomicity: BEGIN IMMEDIATE + UPDATE...RETURNING
        """
        now = _ts(_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?,
                    worker_id = ?,
                    started_at = ?,
                    last_heartbeat = ?,
                    updated_at = ?
                WHERE job_id = (
                    SELECT job_id FROM jobs
                    WHERE status = ? AND available_at <= ?
                    ORDER BY priority DESC, created_at ASC, rowid ASC
                    LIMIT 1
                )
                RETURNING *
                """,
                (
                    JobStatus.ACTIVE.value,
                    worker_id,
                    now,
                    now,
                    now,
                    JobStatus.WAITING.value,
                    now,
                ),
            )
            row = cursor.fetchone()
            if row is None:
                return None

            columns = [description[0] for description in cursor.description]
            record = dict(zip(columns, row))
            self._log_transition(
                conn, record["job_id"], JobStatus.WAITING.value, JobStatus.ACTIVE.value, worker_id
            )

        return self._row_to_job(record)

    def update_progress(self, job_id: str, progress: JobProgress) -> None:
        """Overwrite the latest progress of an active job."""
        self.db.execute(
            "UPDATE jobs SET progress = ?, updated_at = ? WHERE job_id = ? AND status = ?",
            (
                progress.model_dump_json(exclude_none=True),
                _ts(_now()),
                job_id,
                JobStatus.ACTIVE.value,
            ),
        )

    def ack_success(
        self, job_id: str, result: JobResult, worker_id: Optional[str] = None
    ) -> bool:
        """Mark job completed with its artifacts.

        Only an active job is settled, and only by ``worker_id`` when given.
        Returns False when the lease was lost.
        """
        now = _ts(_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?,
                    result = ?,
                    completed_at = ?,
                    updated_at = ?,
                    last_error = NULL
                WHERE job_id = ? AND status = ? AND (? IS NULL OR worker_id = ?)
                """,
                (
                    JobStatus.COMPLETED.value,
                    result.model_dump_json(),
                    now,
                    now,
                    job_id,
                    JobStatus.ACTIVE.value,
                    worker_id,
                    worker_id,
                ),
            )
            if cursor.rowcount == 0:
                logger.warning("Job %s not settled: lease held by another worker", job_id)
                return False
            self._log_transition(
                conn, job_id, JobStatus.ACTIVE.value, JobStatus.COMPLETED.value, worker_id
            )
        return True

    def ack_fail(
        self, job_id: str, error: str, retry: bool = True, worker_id: Optional[str] = None
    ) -> str:
        """Record a failed attempt.

        Returns LEASE_LOST without touching the job when it is no longer
        active or, with ``worker_id`` given, is leased by someone else.

        Retry logic:
        - If retry=True and attempts < max_attempts: back to 'waiting' after
          backoff_delay_s * 2 ** (attempt - 1)
        - Otherwise: 'failed' (terminal) plus a dead-letter record
        """
        error_snippet = error[:500] if error else None
        now = _now()

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT kind, payload, attempt_count, max_attempts, status, worker_id "
                "FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()
            if row is None:
                return NOT_FOUND

            kind, payload, attempt_count, max_attempts, status, holder = row
            if status != JobStatus.ACTIVE.value or (worker_id is not None and holder != worker_id):
                logger.warning("Job %s not failed: lease held by another worker", job_id)
                return LEASE_LOST
            new_attempt = attempt_count + 1

            if retry and new_attempt < max_attempts:
                delay = self.backoff_delay_s * (2 ** (new_attempt - 1))
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?,
                        attempt_count = ?,
                        last_error = ?,
                        worker_id = NULL,
                        available_at = ?,
                        updated_at = ?
                    WHERE job_id = ?
                    """,
                    (
                        JobStatus.WAITING.value,
                        new_attempt,
                        error_snippet,
                        _ts(now + timedelta(seconds=delay)),
                        _ts(now),
                        job_id,
                    ),
                )
                self._log_transition(
                    conn, job_id, JobStatus.ACTIVE.value, JobStatus.WAITING.value, error=error_snippet
                )
                return JobStatus.WAITING.value

            conn.execute(
                """
                UPDATE jobs
                SET status = ?,
                    attempt_count = ?,
                    last_error = ?,
                    completed_at = ?,
                    updated_at = ?
                WHERE job_id = ?
                """,
                (JobStatus.FAILED.value, new_attempt, error_snippet, _ts(now), _ts(now), job_id),
            )
            conn.execute(
                """
                INSERT INTO dead_letters (job_id, kind, payload, attempts, error, failed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (job_id, kind, payload, new_attempt, error, _ts(now)),
            )
            self._log_transition(
                conn, job_id, JobStatus.ACTIVE.value, JobStatus.FAILED.value, error=error_snippet
            )

        logger.warning("Job %s dead-lettered after %d attempt(s)", job_id, new_attempt)
        return JobStatus.FAILED.value

    def update_heartbeat(self, job_id: str) -> None:
        """Update heartbeat timestamp for a long-running job.

        Only updates if job is in 'active' state.
        """
        self.db.execute(
            "UPDATE jobs SET last_heartbeat = ? WHERE job_id = ? AND status = ?",
            (_ts(_now()), job_id, JobStatus.ACTIVE.value),
        )

    def reset_stale_active(self, timeout_s: int = 7200) -> int:
        """Crash recovery: return active jobs with no recent heartbeat to waiting.

        Resets without incrementing attempt_count and clears worker_id.
        """
        cutoff = _ts(_now() - timedelta(seconds=timeout_s))
        with self._transaction() as conn:
            rows = conn.execute(
                """
                UPDATE jobs
                SET status = ?, worker_id = NULL
                WHERE status = ?
                  AND (
                      last_heartbeat < ?
                      OR (last_heartbeat IS NULL AND started_at < ?)
                  )
                RETURNING job_id
                """,
                (JobStatus.WAITING.value, JobStatus.ACTIVE.value, cutoff, cutoff),
            ).fetchall()

            for (job_id,) in rows:
                self._log_transition(
                    conn,
                    job_id,
                    JobStatus.ACTIVE.value,
                    JobStatus.WAITING.value,
                    error="Reset stale job (crash recovery)",
                )

        return len(rows)

    def prune_completed(self, max_age_s: int) -> int:
        """Delete completed jobs (and their audit rows) older than max_age_s."""
        cutoff = _ts(_now() - timedelta(seconds=max_age_s))
        with self._transaction() as conn:
            rows = conn.execute(
                "DELETE FROM jobs WHERE status = ? AND completed_at < ? RETURNING job_id",
                (JobStatus.COMPLETED.value, cutoff),
            ).fetchall()
            conn.executemany(
                "DELETE FROM state_transitions WHERE job_id = ?", [(r[0],) for r in rows]
            )
        if rows:
            logger.info("Pruned %d completed job(s)", len(rows))
        return len(rows)

    def clear_failed(self) -> int:
        """Delete failed jobs and their dead letters (operator action)."""
        with self._transaction() as conn:
            rows = conn.execute(
                "DELETE FROM jobs WHERE status = ? RETURNING job_id", (JobStatus.FAILED.value,)
            ).fetchall()
            ids = [(r[0],) for r in rows]
            conn.executemany("DELETE FROM dead_letters WHERE job_id = ?", ids)
            conn.executemany("DELETE FROM state_transitions WHERE job_id = ?", ids)
        return len(rows)

    # ------------------------------------------------------------------- reads

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        """Return the job, or None when unknown or past its retention window."""
        rows = list(self.db["jobs"].rows_where("job_id = ?", [job_id]))
        if not rows:
            return None

        job = self._row_to_job(rows[0])
        if self._is_expired(job):
            return None
        return job

    def get_state(self, job_id: str) -> str:
        job = self.get_job(job_id)
        return job.status if job else NOT_FOUND

    def get_all_jobs(self, status_filter: Optional[str] = None) -> List[JobRecord]:
        """Query jobs by status, oldest first.

        Complexity: O(n) full scan (acceptable for status commands)
        """
        if status_filter:
            rows = self.db["jobs"].rows_where(
                "status = ?", [status_filter], order_by="created_at"
            )
        else:
            rows = self.db["jobs"].rows_where(order_by="created_at")
        return [self._row_to_job(row) for row in rows]

    def get_dead_letters(self) -> List[DeadLetter]:
        letters = []
        for row in self.db["dead_letters"].rows_where(order_by="id"):
            letters.append(
                DeadLetter(
                    job_id=row["job_id"],
                    kind=row["kind"],
                    payload=json.loads(row["payload"]) if row["payload"] else {},
                    attempts=row["attempts"],
                    error=row["error"],
                    failed_at=datetime.fromisoformat(row["failed_at"]),
                )
            )
        return letters

    def get_transitions(self, job_id: str) -> List[Dict[str, Any]]:
        """Audit trail for one job, oldest first."""
        return list(
            self.db["state_transitions"].rows_where("job_id = ?", [job_id], order_by="id")
        )

    def get_stats(self) -> Dict[str, int]:
        """Job counts per status plus dead letters."""
        stats = {status.value: 0 for status in JobStatus}
        for status, count in self.db.execute(
            "SELECT status, COUNT(*) FROM jobs GROUP BY status"
        ).fetchall():
            stats[status] = count
        stats["total"] = sum(stats[status.value] for status in JobStatus)
        stats["dead_letters"] = self.db["dead_letters"].count
        return stats

    # ----------------------------------------------------------------- helpers

    def _is_expired(self, job: JobRecord) -> bool:
        if not self.remove_on_complete_age_s or job.status != JobStatus.COMPLETED.value:
            return False
        if job.completed_at is None:
            return False
        return job.completed_at < _now() - timedelta(seconds=self.remove_on_complete_age_s)

    def _row_to_job(self, row: Dict[str, Any]) -> JobRecord:
        """Convert SQLite row dict to JobRecord model."""
        data = dict(row)
        for key in JSON_FIELDS:
            data[key] = json.loads(data[key]) if data.get(key) else None
        for key in DATETIME_FIELDS:
            data[key] = datetime.fromisoformat(data[key]) if data.get(key) else None

        return JobRecord(
            job_id=data["job_id"],
            kind=data["kind"],
            payload=data["payload"] or {},
            status=data["status"],
            priority=data.get("priority") or 0,
            attempt_count=data.get("attempt_count") or 0,
            max_attempts=data.get("max_attempts") or self.max_attempts,
            progress=JobProgress(**(data["progress"] or {})),
            result=JobResult(**data["result"]) if data["result"] else None,
            last_error=data.get("last_error"),
            worker_id=data.get("worker_id"),
            created_at=data["created_at"],
            available_at=data["available_at"],
            started_at=data["started_at"],
            completed_at=data["completed_at"],
            updated_at=data["updated_at"],
            last_heartbeat=data["last_heartbeat"],
        )

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log state transition to audit trail (inside the caller's transaction)."""
        conn.execute(
            """
            INSERT INTO state_transitions (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _ts(_now()), worker_id, error[:200] if error else None),
        )
