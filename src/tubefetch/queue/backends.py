"""Abstract base class for the job queue backend.

The interface mirrors what the worker pool and the status facade need: lease
jobs, record progress, settle them, and answer state queries. SQLite is the
only implementation; the seam keeps a Redis-backed queue possible.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .models import DeadLetter, JobProgress, JobRecord, JobResult


class QueueBackend(ABC):
    """Abstract queue interface.

    Implementations must provide:
    - Atomic lease in dequeue (a job is held by at most one worker)
    - Retry with exponential backoff and a dead-letter record on exhaustion
    - Crash recovery via reset_stale_active()
    """

    @abstractmethod
    def enqueue(self, kind: str, payload: Dict[str, Any], priority: int = 0) -> str:
        """Persist a new waiting job and return its id.

        Raises:
            QueueUnavailable: If the store cannot be written
        """

    @abstractmethod
    def dequeue(self, worker_id: str) -> Optional["JobRecord"]:
        """Atomically lease the next due waiting job and mark it active.

        Should respect priority (higher first) then arrival order, and skip
        jobs whose backoff delay has not elapsed.
        """

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["JobRecord"]:
        """Return the job or None when unknown or pruned."""

    @abstractmethod
    def get_state(self, job_id: str) -> str:
        """Return waiting|active|completed|failed|not-found."""

    @abstractmethod
    def update_progress(self, job_id: str, progress: "JobProgress") -> None:
        """Overwrite the job's latest progress (last write wins)."""

    @abstractmethod
    def ack_success(
        self, job_id: str, result: "JobResult", worker_id: Optional[str] = None
    ) -> bool:
        """Mark an active job completed with its result.

        Returns False, leaving the job untouched, when it is not active or
        ``worker_id`` no longer holds its lease.
        """

    @abstractmethod
    def ack_fail(
        self, job_id: str, error: str, retry: bool = True, worker_id: Optional[str] = None
    ) -> str:
        """Record a failed attempt.

        Args:
            job_id: Job identifier
            error: Error message (truncated to ~500 chars)
            retry: If False, skip remaining attempts
            worker_id: Lease holder; a mismatch settles nothing

        Returns:
            Resulting state: 'waiting' when a retry is scheduled, else 'failed'
            ('lease-lost' when the job is not active or leased elsewhere)

        Implementation notes:
        - Terminal failure must write a dead-letter record with the original
          payload, the attempt count reached and the final error
        """

    @abstractmethod
    def update_heartbeat(self, job_id: str) -> None:
        """Refresh the lease heartbeat of an active job."""

    @abstractmethod
    def reset_stale_active(self, timeout_s: int) -> int:
        """Return stuck active jobs to waiting without spending an attempt."""

    @abstractmethod
    def prune_completed(self, max_age_s: int) -> int:
        """Delete completed jobs older than ``max_age_s``; return the count."""

    @abstractmethod
    def get_dead_letters(self) -> List["DeadLetter"]:
        """List dead-letter records, oldest first."""

    @abstractmethod
    def clear_failed(self) -> int:
        """Operator action: delete failed jobs and their dead letters."""

    @abstractmethod
    def get_all_jobs(self, status_filter: Optional[str] = None) -> List["JobRecord"]:
        """Query jobs by status (for status commands)."""
