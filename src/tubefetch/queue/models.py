"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobKind(str, Enum):
    """Which media operation a job runs."""

    VIDEO = "video"
    PLAYLIST = "playlist"


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        waiting → active      (worker leases the job)
        active → completed    (outputs finalized)
        active → waiting      (failed attempt with retry budget left, or crash recovery)
        active → failed       (budget exhausted or permanent error; dead-lettered)
    """

    WAITING = "waiting"  # Queued, possibly delayed by backoff
    ACTIVE = "active"  # Leased by exactly one worker
    COMPLETED = "completed"  # Artifacts in durable storage
    FAILED = "failed"  # Terminal failure

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


NOT_FOUND = "not-found"
LEASE_LOST = "lease-lost"


class JobProgress(BaseModel):
    """Latest progress of a job; overwritten on every update."""

    model_config = ConfigDict(populate_by_name=True)

    percent: float = Field(default=0.0, ge=0.0, le=100.0)
    message: str = ""
    videoIndex: Optional[int] = None  # noqa: N815
    totalVideos: Optional[int] = None  # noqa: N815
    videoId: Optional[str] = None  # noqa: N815

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class FileArtifact(BaseModel):
    """One produced file with its signed download link."""

    name: str
    path: str
    url: str


class JobResult(BaseModel):
    """Outcome of a completed job."""

    downloadUrl: Optional[str] = None  # noqa: N815
    folderPath: Optional[str] = None  # noqa: N815
    files: List[FileArtifact] = Field(default_factory=list)


class JobRecord(BaseModel):
    """Persisted job row.

    ``payload`` is kept exactly as submitted so dead letters can carry it.
    """

    model_config = ConfigDict(use_enum_values=True)

    job_id: str = Field(..., description="Unique job identifier (UUID hex)")
    kind: JobKind = Field(..., description="video or playlist")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Request payload")
    status: JobStatus = Field(default=JobStatus.WAITING, description="Current job state")
    priority: int = Field(default=0, ge=0, description="Higher = processed first")
    attempt_count: int = Field(default=0, ge=0, description="Failed attempts so far")
    max_attempts: int = Field(default=3, ge=1, description="Max attempts before dead letter")
    progress: JobProgress = Field(default_factory=JobProgress)
    result: Optional[JobResult] = None
    last_error: Optional[str] = Field(default=None, description="Last error message (truncated)")
    worker_id: Optional[str] = Field(default=None, description="Worker holding the lease")
    created_at: datetime = Field(default_factory=datetime.now, description="Queue time")
    available_at: datetime = Field(default_factory=datetime.now, description="Not before")
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None


class DeadLetter(BaseModel):
    """Record of a job that exhausted its retry budget."""

    job_id: str
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: int
    error: Optional[str] = None
    failed_at: datetime = Field(default_factory=datetime.now)


class ProgressEvent(BaseModel):
    """Ephemeral broadcast message; never persisted."""

    jobId: str  # noqa: N815
    type: str  # progress | retrying | completed | failed
    progress: Optional[JobProgress] = None
    result: Optional[JobResult] = None
    message: Optional[str] = None

    @classmethod
    def progress_update(cls, job_id: str, progress: JobProgress) -> "ProgressEvent":
        return cls(jobId=job_id, type="progress", progress=progress)

    @classmethod
    def retrying(cls, job_id: str, message: str) -> "ProgressEvent":
        """A failed attempt went back to waiting; progress restarts from zero."""
        return cls(jobId=job_id, type="retrying", message=message)

    @classmethod
    def completed(cls, job_id: str, result: JobResult) -> "ProgressEvent":
        return cls(jobId=job_id, type="completed", result=result)

    @classmethod
    def failed(cls, job_id: str, message: str) -> "ProgressEvent":
        return cls(jobId=job_id, type="failed", message=message)
