"""Durable job queue and worker pool."""

from .backends import QueueBackend
from .models import (
    LEASE_LOST,
    NOT_FOUND,
    DeadLetter,
    FileArtifact,
    JobKind,
    JobProgress,
    JobRecord,
    JobResult,
    JobStatus,
    ProgressEvent,
)
from .sqlite_backend import SQLiteQueue
from .worker import JobWorkerPool

__all__ = [
    "QueueBackend",
    "LEASE_LOST",
    "NOT_FOUND",
    "DeadLetter",
    "FileArtifact",
    "JobKind",
    "JobProgress",
    "JobRecord",
    "JobResult",
    "JobStatus",
    "ProgressEvent",
    "SQLiteQueue",
    "JobWorkerPool",
]
