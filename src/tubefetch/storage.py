"""
Filesystem layout for job artifacts.

Every job owns two directories under ``output_base``::

    tmp/<job_id>/              scratch space for yt-dlp and ffmpeg
    storage/<job_id>/files/    finalized artifacts served over HTTP

Only named outputs move from the first to the second; the scratch directory
is always discarded afterwards.
"""

import logging
import shutil
import time
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .ytdlp_runner import ensure_directory

logger = logging.getLogger(__name__)


class StorageLayout:
    def __init__(self, output_base="."):
        self.base = Path(output_base).resolve()
        self.storage_root = self.base / "storage"
        self.tmp_root = self.base / "tmp"

    @classmethod
    def from_config(cls, config) -> "StorageLayout":
        return cls(config.output_base)

    def job_dir(self, job_id: str) -> Path:
        return self.storage_root / job_id

    def files_dir(self, job_id: str) -> Path:
        return self.job_dir(job_id) / "files"

    def temp_dir(self, job_id: str) -> Path:
        return self.tmp_root / job_id

    def prepare(self, job_id: str) -> Tuple[Path, Path]:
        """Create the job's scratch and durable directories."""
        return ensure_directory(self.temp_dir(job_id)), ensure_directory(self.files_dir(job_id))

    def finalize_files(self, job_id: str, paths: Iterable[str]) -> List[Path]:
        """Move the named outputs into durable storage.

        Nothing else in the scratch directory is carried over, so leftover
        intermediates never become downloadable.
        """
        destination = ensure_directory(self.files_dir(job_id))
        finalized = []
        for path in paths:
            source = Path(path)
            target = destination / source.name
            shutil.move(str(source), str(target))
            finalized.append(target)
        return finalized

    def resolve_file(self, job_id: str, file_name: str) -> Optional[Path]:
        """Return the artifact path, or None for names escaping the job directory."""
        safe_name = Path(file_name).name
        if not safe_name or safe_name != file_name or safe_name in (".", ".."):
            return None

        base = self.files_dir(job_id).resolve()
        target = (base / safe_name).resolve()
        if target.parent != base:
            return None
        return target

    def discard_temp(self, job_id: str) -> None:
        temp = self.temp_dir(job_id)
        try:
            shutil.rmtree(temp)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to remove temp dir %s: %s", temp, e)

    def discard_job_if_empty(self, job_id: str) -> bool:
        """Remove ``storage/<job_id>`` when it holds no finalized file."""
        job_dir = self.job_dir(job_id)
        if not job_dir.exists():
            return False
        if any(p.is_file() for p in job_dir.rglob("*")):
            return False
        try:
            shutil.rmtree(job_dir)
        except OSError as e:
            logger.error("Failed to remove job dir %s: %s", job_dir, e)
            return False
        return True


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def cleanup_expired(layout: StorageLayout, ttl_hours: float, now: Optional[float] = None) -> int:
    """Delete ``storage/*`` and ``tmp/*`` entries older than ``ttl_hours`` by mtime.

    Returns the number of entries removed. Entries that cannot be inspected
    or removed are logged and skipped.
    """
    now = time.time() if now is None else now
    ttl_s = ttl_hours * 3600
    removed = 0

    for root, label in ((layout.storage_root, "storage"), (layout.tmp_root, "tmp")):
        if not root.exists():
            continue
        for entry in root.iterdir():
            try:
                if now - entry.stat().st_mtime <= ttl_s:
                    continue
                _remove(entry)
            except OSError as e:
                logger.error("Failed to clean up %s: %s", entry, e)
                continue
            removed += 1
            logger.info("Removed expired %s entry: %s", label, entry)

    return removed
