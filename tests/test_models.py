import pytest
from pydantic import ValidationError

from tubefetch.models import DownloadOptions, TubefetchConfig
from tubefetch.queue import JobProgress, JobStatus


def test_tubefetch_config_from_dict():
    """Test creating TubefetchConfig from dict."""
    config = TubefetchConfig.from_dict({"queue": {"max_attempts": 5}, "worker": {"concurrency": 4}})

    assert config.queue.max_attempts == 5
    assert config.worker.concurrency == 4
    assert config.server.keepalive_s == 25.0


def test_tubefetch_config_merge_cli_overrides():
    config = TubefetchConfig()
    merged = config.merge_overrides({"db": "x.db", "host": "127.0.0.1", "workers": None})

    assert merged.queue.db_path == "x.db"
    assert merged.server.host == "127.0.0.1"
    assert merged.worker.concurrency == config.worker.concurrency
    assert config.queue.db_path == "data/queue.db"


def test_config_validation():
    with pytest.raises(ValidationError):
        TubefetchConfig.from_dict({"queue": {"max_attempts": 0}})
    with pytest.raises(ValidationError):
        TubefetchConfig.from_dict({"server": {"port": 70000}})


def test_download_options_validation():
    assert DownloadOptions().format == "mp4"
    with pytest.raises(ValidationError):
        DownloadOptions(format="flac")
    with pytest.raises(ValidationError):
        DownloadOptions(quality="4k")


def test_job_progress_bounds():
    with pytest.raises(ValidationError):
        JobProgress(percent=101)
    assert JobProgress(percent=50, videoIndex=1).to_dict() == {
        "percent": 50.0,
        "message": "",
        "videoIndex": 1,
    }


def test_terminal_states():
    assert JobStatus.COMPLETED.is_terminal
    assert JobStatus.FAILED.is_terminal
    assert not JobStatus.WAITING.is_terminal
