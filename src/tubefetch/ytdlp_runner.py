"""yt-dlp runner with merged output streaming, timeout enforcement and progress tracking.

One call to :meth:`YtdlpRunner.download` spawns exactly one yt-dlp process
and blocks until it exits. Both output streams are read by their own thread
and pushed onto a single queue in arrival order; the calling thread consumes
that queue, so progress callbacks always run on the caller's thread.

Key Features:
- Interleaved stdout/stderr merge with one monotonic percent tracker
- Wall-clock timeout with process tree cleanup (psutil)
- Failure classification: non-zero exit vs. missing output path
- Bounded stderr tail kept for error messages
"""

import logging
import queue
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, List, Optional, Tuple

import psutil

from .exceptions import (
    OutputDirectoryError,
    SubprocessFailure,
    SubprocessTimeout,
    UnresolvedOutputPath,
)
from .progress import ProgressTracker, parse_line

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

STDOUT = "stdout"
STDERR = "stderr"


@dataclass
class RunResult:
    """Outcome of one yt-dlp execution."""

    returncode: Optional[int]
    path: Optional[str]
    stderr_tail: str
    duration_s: float
    percent: float = 0.0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def ensure_directory(target_dir) -> Path:
    """Create ``target_dir`` (and parents) or raise OutputDirectoryError."""
    path = Path(target_dir)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OutputDirectoryError(f'Failed to prepare output directory "{path}": {e}') from e
    return path


def check_ytdlp(binary: str = "yt-dlp") -> Optional[str]:
    """Return the yt-dlp version string, or None when it cannot be run."""
    try:
        completed = subprocess.run(
            [binary, "--version"],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=30,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired):
        return None
    return completed.stdout.strip() or None


def summarize_stderr(stderr: str) -> str:
    """Pick the most useful line of yt-dlp stderr for an error message."""
    if not stderr.strip():
        return "yt-dlp returned an error with no output."

    for line in stderr.strip().splitlines():
        if line.lower().startswith("error:"):
            error_msg = line[6:].strip()
            return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

    return stderr.strip().splitlines()[-1]


class YtdlpRunner:
    """Runs yt-dlp for a single URL and reports where the file landed.

    Example:
        >>> runner = YtdlpRunner(timeout_s=1800)
        >>> path = runner.download(
        ...     "https://www.youtube.com/watch?v=abc",
        ...     "/tmp/job/%(title)s.%(ext)s",
        ...     "bestaudio/best",
        ...     progress_callback=lambda pct, msg: print(pct, msg),
        ... )
    """

    def __init__(
        self,
        binary: str = "yt-dlp",
        timeout_s: int = 3600,
        kill_grace_period_s: int = 5,
        stderr_tail_lines: int = 20,
        extra_args: Optional[List[str]] = None,
    ):
        """Initialize the runner.

        Args:
            binary: yt-dlp executable name or path
            timeout_s: Maximum wall-clock duration of one process
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            stderr_tail_lines: How many stderr lines to keep for errors
            extra_args: Additional arguments placed before the URL
        """
        self.binary = binary
        self.timeout_s = timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.stderr_tail_lines = stderr_tail_lines
        self.extra_args = list(extra_args or [])
        self.last_result: Optional[RunResult] = None

    @classmethod
    def from_config(cls, config) -> "YtdlpRunner":
        """Build a runner from a DownloaderConfig."""
        return cls(
            binary=config.ytdlp_binary,
            timeout_s=config.timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            stderr_tail_lines=config.stderr_tail_lines,
        )

    def build_command(self, url: str, output_template: str, format_selector: str) -> List[str]:
        """Build the yt-dlp argument vector."""
        return [
            self.binary,
            "--newline",  # one progress report per line
            "--no-playlist",
            "--no-colors",
            "-f", format_selector,
            "-o", output_template,
            *self.extra_args,
            url,
        ]

    def download(
        self,
        url: str,
        output_template: str,
        format_selector: str,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        """Download ``url`` and return the resolved output path.

        Raises:
            ValueError: If url or output_template is empty
            OutputDirectoryError: If the template's directory does not exist
            SubprocessFailure: If yt-dlp exits non-zero (SubprocessTimeout if killed)
            UnresolvedOutputPath: If yt-dlp succeeded without naming its output
        """
        if not url:
            raise ValueError("Video URL is required.")
        if not output_template:
            raise ValueError("An output template is required.")

        output_dir = Path(output_template).parent
        if not output_dir.is_dir():
            raise OutputDirectoryError(f"Output directory does not exist: {output_dir}")

        cmd = self.build_command(url, output_template, format_selector)
        result = self._run(cmd, progress_callback)
        self.last_result = result

        if result.timed_out:
            raise SubprocessTimeout(
                f"yt-dlp timed out after {self.timeout_s}s",
                returncode=result.returncode,
                stderr_tail=result.stderr_tail,
            )

        if result.returncode != 0:
            raise SubprocessFailure(
                f"yt-dlp failed (exit {result.returncode}): {summarize_stderr(result.stderr_tail)}",
                returncode=result.returncode,
                stderr_tail=result.stderr_tail,
            )

        if not result.path:
            raise UnresolvedOutputPath(
                "Download completed but the output file path could not be determined."
            )

        return result.path

    def _run(self, cmd: List[str], progress_callback: Optional[ProgressCallback]) -> RunResult:
        """Execute yt-dlp, consuming both streams until exit or timeout."""
        start_time = time.monotonic()
        deadline = start_time + self.timeout_s
        tracker = ProgressTracker()
        stderr_tail: Deque[str] = deque(maxlen=self.stderr_tail_lines)
        last_path: Optional[str] = None
        timed_out = False

        logger.debug("Spawning %s", " ".join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,  # Line buffered for real-time progress
            )
        except OSError as e:
            raise SubprocessFailure(f"Unable to start {cmd[0]}: {e}") from e

        channel: "queue.Queue[Tuple[str, Optional[str]]]" = queue.Queue()
        readers = [
            threading.Thread(target=self._pump, args=(process.stdout, STDOUT, channel), daemon=True),
            threading.Thread(target=self._pump, args=(process.stderr, STDERR, channel), daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            open_streams = len(readers)
            while open_streams:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    break
                try:
                    source, line = channel.get(timeout=remaining)
                except queue.Empty:
                    timed_out = True
                    break

                if line is None:
                    open_streams -= 1
                    continue

                if source == STDERR and line.strip():
                    stderr_tail.append(line.rstrip("\n"))

                parsed = parse_line(line)
                if parsed.path:
                    last_path = parsed.path

                if parsed.percent is not None:
                    if tracker.observe(parsed.percent):
                        self._notify(progress_callback, tracker.percent, parsed.message)
                elif parsed.message:
                    self._notify(progress_callback, tracker.percent, parsed.message)

            if timed_out:
                logger.warning("yt-dlp exceeded %ss, killing pid %s", self.timeout_s, process.pid)
                self._kill_process_tree(process)
                returncode = process.poll()
            else:
                try:
                    returncode = process.wait(timeout=max(0.1, deadline - time.monotonic()))
                except subprocess.TimeoutExpired:
                    timed_out = True
                    self._kill_process_tree(process)
                    returncode = process.poll()
        except BaseException:
            # Unexpected error - never leave the process running
            self._kill_process_tree(process)
            raise
        finally:
            for reader in readers:
                reader.join(timeout=2)
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    stream.close()

        return RunResult(
            returncode=returncode,
            path=last_path,
            stderr_tail="\n".join(stderr_tail),
            duration_s=time.monotonic() - start_time,
            percent=tracker.percent,
            timed_out=timed_out,
        )

    @staticmethod
    def _pump(stream, source: str, channel: "queue.Queue") -> None:
        """Copy lines from one pipe into the shared channel, then post EOF."""
        try:
            if stream is not None:
                for line in stream:
                    channel.put((source, line))
        except (OSError, ValueError) as e:
            # Pipe closed underneath us while killing the process
            logger.debug("Stopped reading %s: %s", source, e)
        finally:
            channel.put((source, None))

    @staticmethod
    def _notify(callback: Optional[ProgressCallback], percent: float, message: str) -> None:
        if callback is None:
            return
        try:
            callback(percent, message)
        except Exception:
            # Don't let a listener break the output stream
            logger.exception("Progress callback failed")

    def _kill_process_tree(self, process: subprocess.Popen) -> None:
        """Terminate yt-dlp and its children (ffmpeg merges), then force kill."""
        try:
            parent = psutil.Process(process.pid)
        except psutil.NoSuchProcess:
            return

        try:
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            children = []

        procs = [parent] + children
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("yt-dlp pid %s did not exit after kill", process.pid)
