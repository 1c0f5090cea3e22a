"""
Job status facade: point-in-time snapshots and live progress streams.

Streams combine the persisted job state with live bus events. The listener
subscribes before it reads the job, so an event published between the read
and the subscription cannot be missed.
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional

from .exceptions import EventBusClosed
from .queue.backends import QueueBackend
from .queue.models import JobProgress, JobRecord, JobResult, JobStatus, ProgressEvent

logger = logging.getLogger(__name__)

WAITING_MESSAGE = "Waiting for worker..."


def progress_frame(progress: JobProgress, default_message: Optional[str] = None) -> Dict[str, Any]:
    return {
        "type": "progress",
        "percent": progress.percent,
        "message": progress.message or default_message,
        "videoIndex": progress.videoIndex,
        "totalVideos": progress.totalVideos,
    }


def complete_frame(result: Optional[JobResult]) -> Dict[str, Any]:
    result = result or JobResult()
    return {
        "type": "complete",
        "url": result.downloadUrl,
        "files": [f.model_dump() for f in result.files],
        "folderPath": result.folderPath,
    }


def error_frame(message: Optional[str]) -> Dict[str, Any]:
    return {"type": "error", "message": message or "Job failed"}


def heartbeat_frame() -> Dict[str, Any]:
    return {"type": "heartbeat", "ts": int(time.time() * 1000)}


class _MonotonicFilter:
    """Per-listener guard: percent never goes backwards within one item."""

    def __init__(self):
        self.percent: Optional[float] = None
        self.video_index: Optional[int] = None

    def accept(self, frame: Dict[str, Any]) -> bool:
        index = frame.get("videoIndex")
        percent = frame.get("percent") or 0.0

        new_item = index is not None and (self.video_index is None or index > self.video_index)
        if index is not None and self.video_index is not None and index < self.video_index:
            return False
        if not new_item and self.percent is not None and percent < self.percent:
            return False

        self.percent = percent
        if index is not None:
            self.video_index = index
        return True


class JobStatusFacade:
    def __init__(self, queue: QueueBackend, event_bus, keepalive_s: float = 25.0):
        self.queue = queue
        self.event_bus = event_bus
        self.keepalive_s = keepalive_s

    def get_job_snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Current persisted view of a job, or None when unknown."""
        job = self.queue.get_job(job_id)
        if job is None:
            return None

        return {
            "id": job.job_id,
            "state": job.status,
            "progress": job.progress.to_dict(),
            "data": job.payload,
            "result": job.result.model_dump() if job.result else {},
            "error": job.last_error,
        }

    def _terminal_frame(self, job: JobRecord) -> Optional[Dict[str, Any]]:
        if job.status == JobStatus.COMPLETED.value:
            return complete_frame(job.result)
        if job.status == JobStatus.FAILED.value:
            return error_frame(job.last_error)
        return None

    @staticmethod
    def _event_frame(event: ProgressEvent) -> Dict[str, Any]:
        if event.type == "completed":
            return complete_frame(event.result)
        if event.type == "failed":
            return error_frame(event.message)
        if event.type == "retrying":
            return {**progress_frame(JobProgress(message=event.message or "")), "retry": True}
        return progress_frame(event.progress or JobProgress())

    async def _load(self, job_id: str) -> Optional[JobRecord]:
        return await asyncio.to_thread(self.queue.get_job, job_id)

    async def stream(self, job_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield frames until the job settles or the bus shuts down.

        The first frame reflects the persisted state. Exactly one terminal
        frame (``complete`` or ``error``) ends the stream.
        """
        with self.event_bus.subscribe() as subscription:
            job = await self._load(job_id)
            if job is None:
                yield error_frame("Job not found")
                return

            terminal = self._terminal_frame(job)
            if terminal:
                yield terminal
                return

            monotonic = _MonotonicFilter()
            initial = progress_frame(job.progress, WAITING_MESSAGE)
            monotonic.accept(initial)
            yield initial

            while True:
                try:
                    event = await subscription.get(timeout=self.keepalive_s)
                except EventBusClosed:
                    logger.debug("Bus closed while streaming job %s", job_id)
                    return

                if event is None:
                    yield heartbeat_frame()
                    # Terminal transitions from other processes never reach this bus
                    job = await self._load(job_id)
                    if job is None:
                        yield error_frame("Job not found")
                        return
                    terminal = self._terminal_frame(job)
                    if terminal:
                        yield terminal
                        return
                    continue

                if event.jobId != job_id:
                    continue

                frame = self._event_frame(event)
                if frame.get("retry"):
                    # The next attempt starts over from zero
                    monotonic = _MonotonicFilter()
                    monotonic.accept(frame)
                    yield frame
                    continue
                if frame["type"] == "progress":
                    if monotonic.accept(frame):
                        yield frame
                    continue

                yield frame
                return
