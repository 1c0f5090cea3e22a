import threading
from pathlib import Path

import pytest

from tubefetch.exceptions import SubprocessFailure
from tubefetch.models import TubefetchConfig
from tubefetch.playlist import PlaylistItem, PlaylistListing
from tubefetch.queue import SQLiteQueue


class FakeRunner:
    """Stands in for YtdlpRunner: writes a small file instead of spawning yt-dlp."""

    def __init__(self, ext="mp4", percents=(10.0, 55.0), fail_times=0, error=None):
        self.ext = ext
        self.percents = percents
        self.fail_times = fail_times
        self.error = error
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def download(self, url, output_template, format_selector, progress_callback=None):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.calls.append((url, output_template, format_selector))
            if self.fail_times > 0:
                self.fail_times -= 1
                raise self.error or SubprocessFailure("yt-dlp failed (exit 1): boom", returncode=1)

            for percent in self.percents:
                if progress_callback:
                    progress_callback(percent, f"[download] {percent}%")

            video_id = url.rsplit("=", 1)[-1]
            target = Path(
                output_template.replace("%(title)s", f"title-{video_id}").replace("%(ext)s", self.ext)
            )
            target.write_bytes(b"data-" + video_id.encode())
            # Leftover fragment that must never become an artifact
            (target.parent / f"{target.stem}.part").write_bytes(b"partial")
            return str(target)
        finally:
            with self._lock:
                self.active -= 1


def fake_converter(path, bitrate="192k"):
    source = Path(path)
    target = source.with_suffix(".mp3")
    target.write_bytes(source.read_bytes())
    source.unlink()
    return str(target)


def make_listing(ids, title="My List"):
    return PlaylistListing(
        title=title,
        type="playlist",
        items=[PlaylistItem(id=video_id, title=f"Video {video_id}") for video_id in ids],
    )


class FakeFetcher:
    def __init__(self, listing):
        self.listing = listing
        self.calls = []

    def __call__(self, url):
        self.calls.append(url)
        return self.listing


@pytest.fixture
def app_config(tmp_path):
    """Config rooted in a temp directory with instant retries."""
    return TubefetchConfig.from_dict(
        {
            "queue": {"db_path": str(tmp_path / "queue.db"), "backoff_delay_s": 0},
            "storage": {"output_base": str(tmp_path / "out")},
            "worker": {"concurrency": 1, "poll_interval_s": 0.05, "heartbeat_interval_s": 0.05},
            "server": {"token_secret": "test-secret", "keepalive_s": 0.2},
        }
    )


@pytest.fixture
def job_queue(app_config):
    queue = SQLiteQueue.from_config(app_config.queue)
    yield queue
    queue.close()
