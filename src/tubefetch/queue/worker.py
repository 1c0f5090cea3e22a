"""Worker pool: leases jobs and runs them through the media operations.

This module provides parallel job execution with:
- A fixed number of long-lived worker threads polling the queue
- Heartbeat threads for long-running jobs
- Error classification (permanent vs transient) driving retries
- Per-job scratch directories that are always discarded
- Best-effort progress broadcast on the event bus
"""

import logging
import os
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..downloader import ItemProgress, MediaOperations
from ..exceptions import UnsupportedJobKind, ValidationError, is_permanent
from ..models import DownloadOptions, TubefetchConfig
from ..storage import StorageLayout
from ..tokens import TokenSigner
from .backends import QueueBackend
from .models import (
    LEASE_LOST,
    FileArtifact,
    JobKind,
    JobProgress,
    JobRecord,
    JobResult,
    JobStatus,
    ProgressEvent,
)

logger = logging.getLogger(__name__)

PRUNE_INTERVAL_S = 60.0


class JobWorkerPool:
    """Thread-based worker pool for download jobs.

    Features:
    - Exactly ``worker.concurrency`` threads, one job each at a time
    - Crash recovery of stale leases on start
    - Context manager for graceful shutdown
    - Idle loops prune completed jobs past their retention window
    """

    def __init__(
        self,
        queue: QueueBackend,
        event_bus,
        layout: StorageLayout,
        signer: TokenSigner,
        config: Optional[TubefetchConfig] = None,
        operations: Optional[MediaOperations] = None,
    ):
        self.queue = queue
        self.event_bus = event_bus
        self.layout = layout
        self.signer = signer
        self.config = config or TubefetchConfig()
        self.operations = operations or MediaOperations.from_config(self.config.downloader)

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._last_prune = 0.0

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop(wait=True)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Reset stale leases and launch the worker threads."""
        if self.running:
            raise RuntimeError("Worker pool already started")

        recovered = self.queue.reset_stale_active(self.config.queue.stale_timeout_s)
        if recovered:
            logger.warning("Reset %d stale job(s) back to waiting", recovered)

        self._stop.clear()
        self._threads = []
        for index in range(self.config.worker.concurrency):
            worker_id = f"worker-{os.getpid()}-{index}"
            thread = threading.Thread(
                target=self._run_loop, args=(worker_id,), name=worker_id, daemon=True
            )
            thread.start()
            self._threads.append(thread)

        logger.info("Started %d worker thread(s)", len(self._threads))

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Graceful shutdown.

        Args:
            wait: If True, wait for in-flight jobs to finish
            timeout: Per-thread join timeout
        """
        self._stop.set()
        if wait:
            for thread in self._threads:
                thread.join(timeout=timeout)
        self._threads = []
        logger.info("Worker pool stopped")

    def run_until_empty(self, max_jobs: Optional[int] = None, worker_id: str = "worker-cli") -> int:
        """Process due jobs in the calling thread until none remain.

        Returns:
            Number of jobs processed
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            job = self.queue.dequeue(worker_id)
            if job is None:
                break
            self.process_job(job)
            processed += 1
        return processed

    def _run_loop(self, worker_id: str) -> None:
        poll_interval = self.config.worker.poll_interval_s
        while not self._stop.is_set():
            try:
                job = self.queue.dequeue(worker_id)
            except sqlite3.Error as e:
                logger.error("%s could not lease a job: %s", worker_id, e)
                self._stop.wait(poll_interval)
                continue

            if job is None:
                self._prune_expired()
                self._stop.wait(poll_interval)
                continue

            try:
                self.process_job(job)
            except Exception:
                # Settling the job failed (queue write); the lease is recovered as stale
                logger.exception("%s crashed while settling job %s", worker_id, job.job_id)

        close = getattr(self.queue, "close", None)
        if close:
            close()

    def _prune_expired(self) -> None:
        now = time.monotonic()
        if now - self._last_prune < PRUNE_INTERVAL_S:
            return
        self._last_prune = now
        try:
            self.queue.prune_completed(self.config.queue.remove_on_complete_age_s)
        except sqlite3.Error as e:
            logger.error("Pruning completed jobs failed: %s", e)

    # ------------------------------------------------------------------ jobs

    def process_job(self, job: JobRecord) -> str:
        """Run one leased job to a settled state.

        Returns:
            Resulting queue state ('completed', 'waiting' for a scheduled retry, or 'failed'),
            or LEASE_LOST when another worker reclaimed the job meanwhile

        Error handling:
        - Permanent errors (bad input, empty selection, unknown kind): no retry
        - Everything else: retry with backoff until the attempt budget is spent
        - Scratch space is removed on every path
        """
        job_id = job.job_id
        succeeded = False
        latest: Dict[str, JobProgress] = {}

        try:
            temp_dir, files_dir = self.layout.prepare(job_id)

            heartbeat = self._start_heartbeat(job_id)
            try:
                outputs = self._run_operation(job, temp_dir, latest)
            finally:
                self._stop_heartbeat(heartbeat)

            finalized = self.layout.finalize_files(job_id, outputs)

            last = latest.get("progress") or JobProgress()
            self._report(
                job_id,
                JobProgress(
                    percent=100.0,
                    message="Download complete",
                    videoIndex=last.videoIndex,
                    totalVideos=last.totalVideos,
                    videoId=last.videoId,
                ),
            )

            files = [
                FileArtifact(name=p.name, path=str(p), url=self.signer.build_url(job_id, p.name))
                for p in finalized
            ]
            result = JobResult(
                downloadUrl=files[0].url if files else None,
                folderPath=str(files_dir),
                files=files,
            )
            succeeded = True
            if not self.queue.ack_success(job_id, result, worker_id=job.worker_id):
                return LEASE_LOST
            logger.info("Job %s completed with %d file(s)", job_id, len(files))
            self._publish(ProgressEvent.completed(job_id, result))
            return JobStatus.COMPLETED.value

        except Exception as e:
            message = str(e) or type(e).__name__
            permanent = is_permanent(e)
            logger.error(
                "Job %s attempt %d failed (%s): %s",
                job_id,
                job.attempt_count + 1,
                "permanent" if permanent else "transient",
                message,
            )

            state = self.queue.ack_fail(
                job_id, message, retry=not permanent, worker_id=job.worker_id
            )
            if state == JobStatus.FAILED.value:
                self._publish(ProgressEvent.failed(job_id, message))
            elif state == JobStatus.WAITING.value:
                self._publish(
                    ProgressEvent.retrying(
                        job_id,
                        f"Attempt {job.attempt_count + 1} failed, retry scheduled: {message}",
                    )
                )
            return state

        finally:
            self.layout.discard_temp(job_id)
            if not succeeded:
                self.layout.discard_job_if_empty(job_id)

    def _run_operation(
        self, job: JobRecord, temp_dir: Path, latest: Dict[str, JobProgress]
    ) -> List[str]:
        """Dispatch on job kind and return the paths of the produced files."""
        payload: Dict[str, Any] = job.payload or {}
        raw_options = dict(payload.get("options") or {})
        if job.kind == JobKind.VIDEO.value:
            # Video payloads carry format/quality at the top level
            raw_options.update({k: payload[k] for k in ("format", "quality") if k in payload})
        try:
            options = DownloadOptions(**raw_options)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid download options: {e}") from e

        def report(progress: JobProgress) -> None:
            latest["progress"] = progress
            self._report(job.job_id, progress)

        if job.kind == JobKind.VIDEO.value:
            result = self.operations.download_video(
                payload.get("url"),
                temp_dir,
                lambda percent, message: report(JobProgress(percent=percent, message=message)),
                options,
            )
            return [result.file_path]

        if job.kind == JobKind.PLAYLIST.value:

            def on_item(item: ItemProgress) -> None:
                report(
                    JobProgress(
                        percent=item.percent,
                        message=item.message,
                        videoIndex=item.video_index,
                        totalVideos=item.total_videos,
                        videoId=item.video_id,
                    )
                )

            result = self.operations.download_playlist(payload.get("url"), temp_dir, on_item, options)
            return list(result.files)

        raise UnsupportedJobKind(f"Unsupported job type: {job.kind}")

    def _report(self, job_id: str, progress: JobProgress) -> None:
        """Persist then broadcast progress; neither failure aborts the job."""
        try:
            self.queue.update_progress(job_id, progress)
        except sqlite3.Error as e:
            logger.warning("Failed to persist progress for %s: %s", job_id, e)
        self._publish(ProgressEvent.progress_update(job_id, progress))

    def _publish(self, event: ProgressEvent) -> None:
        if self.event_bus is None:
            return
        try:
            delivered = self.event_bus.publish(event)
        except Exception as e:
            logger.warning("Failed to publish %s event for %s: %s", event.type, event.jobId, e)
            return
        if not delivered:
            logger.debug("Event bus not running; %s event for %s dropped", event.type, event.jobId)

    def _start_heartbeat(self, job_id: str) -> Tuple[threading.Thread, threading.Event]:
        """Start background thread refreshing the job's lease.

        Returns:
            Tuple of (thread, stop_event) for cleanup
        """
        stop_event = threading.Event()
        interval = self.config.worker.heartbeat_interval_s

        def heartbeat_loop():
            while not stop_event.wait(interval):
                try:
                    self.queue.update_heartbeat(job_id)
                except sqlite3.Error as e:
                    # Log but don't crash thread
                    logger.warning("Heartbeat failed for %s: %s", job_id, e)

            close = getattr(self.queue, "close", None)
            if close:
                close()

        thread = threading.Thread(target=heartbeat_loop, name=f"heartbeat-{job_id}", daemon=True)
        thread.start()
        return thread, stop_event

    @staticmethod
    def _stop_heartbeat(heartbeat: Tuple[threading.Thread, threading.Event]) -> None:
        """Signal the heartbeat thread and wait up to 5s for it."""
        thread, stop_event = heartbeat
        stop_event.set()
        thread.join(timeout=5)
