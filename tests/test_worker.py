"""Tests for the worker pool: settlement, retries, and artifact handling."""

import time
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import FakeFetcher, FakeRunner, fake_converter, make_listing
from tubefetch.downloader import MediaOperations
from tubefetch.queue import LEASE_LOST, JobWorkerPool
from tubefetch.storage import StorageLayout
from tubefetch.tokens import TokenSigner


class RecordingBus:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return True


def _video(video_id="A", **options):
    return {"url": f"https://www.youtube.com/watch?v={video_id}", **options}


def _playlist(**options):
    return {"url": "https://www.youtube.com/playlist?list=PL1", "options": options}


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def layout(app_config):
    return StorageLayout.from_config(app_config.storage)


@pytest.fixture
def signer(app_config):
    return TokenSigner.from_config(app_config.server)


@pytest.fixture
def make_pool(app_config, job_queue, bus, layout, signer):
    def factory(runner, listing=None):
        operations = MediaOperations(
            runner=runner,
            fetch_listing=FakeFetcher(listing or make_listing(["A", "B", "C"])),
            converter=fake_converter,
        )
        return JobWorkerPool(job_queue, bus, layout, signer, config=app_config, operations=operations)

    return factory


class TestProcessJob:
    def test_video_success(self, make_pool, runner, job_queue, layout, signer, bus):
        job_id = job_queue.enqueue("video", _video())
        pool = make_pool(runner)

        assert pool.run_until_empty() == 1

        job = job_queue.get_job(job_id)
        assert job.status == "completed"
        assert job.progress.percent == 100
        assert job.progress.message == "Download complete"

        files_dir = layout.files_dir(job_id)
        assert sorted(p.name for p in files_dir.iterdir()) == ["title-A.mp4"]
        assert not layout.temp_dir(job_id).exists()

        artifact = job.result.files[0]
        assert artifact.name == "title-A.mp4"
        assert job.result.downloadUrl == artifact.url
        assert job.result.folderPath == str(files_dir)
        token = parse_qs(urlparse(artifact.url).query)["token"][0]
        assert signer.verify(job_id, "title-A.mp4", token)

        assert bus.events[-1].type == "completed"
        assert bus.events[-1].jobId == job_id

    def test_mp3_video(self, make_pool, job_queue, layout):
        job_id = job_queue.enqueue(
            "video", {"url": "https://www.youtube.com/watch?v=A", "format": "mp3", "quality": "best"}
        )
        make_pool(FakeRunner(ext="webm")).run_until_empty()

        names = sorted(p.name for p in layout.files_dir(job_id).iterdir())
        assert names == ["title-A.mp3"]

    def test_top_level_video_options_win_over_nested(self, make_pool, job_queue):
        job_id = job_queue.enqueue(
            "video",
            {"url": "https://www.youtube.com/watch?v=A", "format": "mp3", "options": {"format": "mp4"}},
        )
        make_pool(FakeRunner(ext="webm")).run_until_empty()

        assert [f.name for f in job_queue.get_job(job_id).result.files] == ["title-A.mp3"]

    def test_playlist_files_are_flattened(self, make_pool, runner, job_queue, layout):
        job_id = job_queue.enqueue("playlist", _playlist())
        make_pool(runner).run_until_empty()

        job = job_queue.get_job(job_id)
        assert job.status == "completed"
        assert [f.name for f in job.result.files] == ["Video_A.mp4", "Video_B.mp4", "Video_C.mp4"]
        assert sorted(p.name for p in layout.files_dir(job_id).iterdir()) == [
            "Video_A.mp4",
            "Video_B.mp4",
            "Video_C.mp4",
        ]
        assert job.progress.videoIndex == 2
        assert runner.max_active == 1

    def test_playlist_selection(self, make_pool, runner, job_queue):
        job_id = job_queue.enqueue("playlist", _playlist(selectedVideoIds=["C"]))
        make_pool(runner).run_until_empty()

        assert len(runner.calls) == 1
        assert [f.name for f in job_queue.get_job(job_id).result.files] == ["Video_C.mp4"]

    def test_progress_events_published(self, make_pool, runner, job_queue, bus):
        job_id = job_queue.enqueue("video", _video())
        make_pool(runner).run_until_empty()

        percents = [e.progress.percent for e in bus.events if e.type == "progress"]
        assert percents[:2] == [10.0, 55.0]
        assert percents[-1] == 100.0
        assert all(e.jobId == job_id for e in bus.events)

    def test_transient_failure_retries_then_dead_letters(self, make_pool, job_queue, layout, bus):
        runner = FakeRunner(fail_times=99)
        job_id = job_queue.enqueue("video", _video())

        processed = make_pool(runner).run_until_empty()

        assert processed == 3
        assert len(runner.calls) == 3
        job = job_queue.get_job(job_id)
        assert job.status == "failed"
        assert job.attempt_count == 3
        assert "boom" in job.last_error

        letters = job_queue.get_dead_letters()
        assert [letter.job_id for letter in letters] == [job_id]
        assert letters[0].payload == _video()

        assert not layout.temp_dir(job_id).exists()
        assert not layout.job_dir(job_id).exists()

        assert [e.type for e in bus.events].count("failed") == 1
        assert bus.events[-1].type == "failed"
        retry_notes = [e for e in bus.events if e.type == "retrying"]
        assert len(retry_notes) == 2
        assert retry_notes[0].message.startswith("Attempt 1 failed, retry scheduled")

    def test_retry_then_success(self, make_pool, job_queue):
        runner = FakeRunner(fail_times=1)
        job_id = job_queue.enqueue("video", _video())

        make_pool(runner).run_until_empty()

        job = job_queue.get_job(job_id)
        assert job.status == "completed"
        assert job.attempt_count == 1
        assert len(runner.calls) == 2

    def test_empty_selection_fails_without_retry(self, make_pool, runner, job_queue):
        job_id = job_queue.enqueue("playlist", _playlist(selectedVideoIds=["Z"]))

        assert make_pool(runner).run_until_empty() == 1

        job = job_queue.get_job(job_id)
        assert job.status == "failed"
        assert job.attempt_count == 1
        assert job.last_error == "No matching videos found in playlist."
        assert runner.calls == []

    def test_invalid_options_fail_permanently(self, make_pool, runner, job_queue):
        job_id = job_queue.enqueue("video", _video(format="avi"))

        make_pool(runner).run_until_empty()

        job = job_queue.get_job(job_id)
        assert job.status == "failed"
        assert job.attempt_count == 1
        assert job.last_error.startswith("Invalid download options")

    def test_unknown_kind(self, make_pool, runner, job_queue):
        job_id = job_queue.enqueue("video", _video())
        job = job_queue.dequeue("w")
        job.kind = "podcast"

        state = make_pool(runner).process_job(job)

        assert state == "failed"
        assert job_queue.get_job(job_id).last_error == "Unsupported job type: podcast"
        assert runner.calls == []

    def test_reclaimed_job_is_left_to_new_owner(self, make_pool, runner, job_queue, bus):
        job_id = job_queue.enqueue("video", _video())
        stale_lease = job_queue.dequeue("w1")
        old = (datetime.now() - timedelta(hours=3)).isoformat(timespec="microseconds")
        job_queue.db.execute("UPDATE jobs SET last_heartbeat = ? WHERE job_id = ?", (old, job_id))
        job_queue.reset_stale_active(timeout_s=600)
        job_queue.dequeue("w2")

        state = make_pool(runner).process_job(stale_lease)

        assert state == LEASE_LOST
        job = job_queue.get_job(job_id)
        assert job.status == "active"
        assert job.worker_id == "w2"
        assert "completed" not in [e.type for e in bus.events]

    def test_works_without_event_bus(self, app_config, job_queue, layout, signer, runner):
        operations = MediaOperations(
            runner=runner, fetch_listing=FakeFetcher(make_listing(["A"])), converter=fake_converter
        )
        pool = JobWorkerPool(job_queue, None, layout, signer, config=app_config, operations=operations)
        job_id = job_queue.enqueue("video", _video())

        pool.run_until_empty()

        assert job_queue.get_state(job_id) == "completed"


class TestPoolThreads:
    def test_threads_drain_queue(self, make_pool, runner, job_queue):
        job_ids = [job_queue.enqueue("video", _video(v)) for v in ("A", "B")]
        pool = make_pool(runner)

        with pool:
            assert pool.running
            assert _wait_for(
                lambda: all(job_queue.get_state(j) == "completed" for j in job_ids)
            )

        assert not pool.running

    def test_start_recovers_stale_lease(self, make_pool, runner, job_queue):
        job_id = job_queue.enqueue("video", _video())
        job_queue.dequeue("crashed-worker")
        stale = (datetime.now() - timedelta(hours=3)).isoformat(timespec="microseconds")
        job_queue.db.execute(
            "UPDATE jobs SET last_heartbeat = ? WHERE job_id = ?", (stale, job_id)
        )

        with make_pool(runner):
            assert _wait_for(lambda: job_queue.get_state(job_id) == "completed")

    def test_double_start_rejected(self, make_pool, runner):
        pool = make_pool(runner)
        with pool:
            with pytest.raises(RuntimeError):
                pool.start()
