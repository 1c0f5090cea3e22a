from unittest.mock import patch

import pytest

from tubefetch.cli import main
from tubefetch.queue import SQLiteQueue


def test_cli_help_displays():
    """Test --help works without errors."""
    with pytest.raises(SystemExit) as exc_info:
        main(["--help"])
    assert exc_info.value.code == 0


@pytest.mark.parametrize("command", ["serve", "worker", "fetch", "check", "cleanup", "queue"])
def test_cli_subcommand_help(command):
    with pytest.raises(SystemExit) as exc_info:
        main([command, "--help"])
    assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    main([])
    assert "usage:" in capsys.readouterr().out.lower()


def test_cli_check_all_found(capsys):
    with patch("tubefetch.ytdlp_runner.check_ytdlp", return_value="2025.01.15"):
        with patch("tubefetch.converter.check_ffmpeg", return_value=True):
            main(["check"])

    out = capsys.readouterr().out
    assert "yt-dlp found (2025.01.15)" in out
    assert "ffmpeg found" in out


def test_cli_check_ffmpeg_not_found(capsys):
    with patch("tubefetch.ytdlp_runner.check_ytdlp", return_value="2025.01.15"):
        with patch("tubefetch.converter.check_ffmpeg", return_value=False):
            with pytest.raises(SystemExit) as exc_info:
                main(["check"])

    assert exc_info.value.code == 1
    assert "ffmpeg NOT found" in capsys.readouterr().out


def test_cli_check_ytdlp_not_found(capsys):
    with patch("tubefetch.ytdlp_runner.check_ytdlp", return_value=None):
        with patch("tubefetch.converter.check_ffmpeg", return_value=True):
            with pytest.raises(SystemExit):
                main(["check"])

    assert "yt-dlp NOT found" in capsys.readouterr().out


def test_cli_fetch_rejects_foreign_url(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["fetch", "https://vimeo.com/1"])

    assert exc_info.value.code == 1
    assert "Only YouTube URLs" in capsys.readouterr().out


def test_cli_queue_status(tmp_path, capsys):
    db = str(tmp_path / "queue.db")
    queue = SQLiteQueue(db)
    queue.enqueue("video", {"url": "https://youtu.be/a"})
    queue.close()

    main(["queue", "status", "--db", db])

    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    assert "Waiting:              1" in out


def test_cli_queue_dead_letters_and_clear(tmp_path, capsys):
    db = str(tmp_path / "queue.db")
    queue = SQLiteQueue(db)
    job_id = queue.enqueue("video", {"url": "https://youtu.be/a"})
    queue.dequeue("w")
    queue.ack_fail(job_id, "Video unavailable", retry=False)
    queue.close()

    main(["queue", "dead-letters", "--db", db])
    out = capsys.readouterr().out
    assert job_id in out
    assert "https://youtu.be/a" in out
    assert "Video unavailable" in out

    main(["queue", "clear", "--db", db])
    assert "Cleared 1 failed job(s)" in capsys.readouterr().out

    main(["queue", "dead-letters", "--db", db])
    assert "No dead letters." in capsys.readouterr().out


def test_cli_worker_once_empty_queue(tmp_path, capsys):
    code = main(
        ["worker", "--once", "--db", str(tmp_path / "q.db"), "--output-base", str(tmp_path)]
    )

    assert code == 0
    assert "Processed 0 job(s)" in capsys.readouterr().out


def test_cli_cleanup(tmp_path, capsys):
    main(["cleanup", "--output-base", str(tmp_path), "--ttl-hours", "1"])
    assert "Removed 0 expired entries" in capsys.readouterr().out
