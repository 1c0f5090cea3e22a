import os
import time

from tubefetch.models import StorageConfig
from tubefetch.storage import StorageLayout, cleanup_expired


def test_prepare_creates_both_dirs(tmp_path):
    layout = StorageLayout(tmp_path)

    temp, files = layout.prepare("job1")

    assert temp == tmp_path.resolve() / "tmp" / "job1"
    assert files == tmp_path.resolve() / "storage" / "job1" / "files"
    assert temp.is_dir() and files.is_dir()


def test_finalize_moves_only_named_outputs(tmp_path):
    layout = StorageLayout(tmp_path)
    temp, files = layout.prepare("job1")
    nested = temp / "My_List"
    nested.mkdir()
    (nested / "a.mp4").write_bytes(b"a")
    (nested / "a.part").write_bytes(b"p")

    finalized = layout.finalize_files("job1", [str(nested / "a.mp4")])

    assert finalized == [files / "a.mp4"]
    assert sorted(p.name for p in files.iterdir()) == ["a.mp4"]
    assert (nested / "a.part").exists()


def test_discard(tmp_path):
    layout = StorageLayout(tmp_path)
    temp, files = layout.prepare("job1")
    (temp / "junk.part").write_bytes(b"x")

    layout.discard_temp("job1")
    assert not temp.exists()
    layout.discard_temp("job1")

    assert layout.discard_job_if_empty("job1")
    assert not layout.job_dir("job1").exists()


def test_discard_keeps_finalized_job(tmp_path):
    layout = StorageLayout(tmp_path)
    _, files = layout.prepare("job1")
    (files / "a.mp4").write_bytes(b"a")

    assert not layout.discard_job_if_empty("job1")
    assert (files / "a.mp4").exists()


def test_resolve_file_rejects_traversal(tmp_path):
    layout = StorageLayout(tmp_path)
    layout.prepare("job1")

    assert layout.resolve_file("job1", "a.mp4") == layout.files_dir("job1").resolve() / "a.mp4"
    assert layout.resolve_file("job1", "../secret") is None
    assert layout.resolve_file("job1", "..") is None
    assert layout.resolve_file("job1", "") is None
    assert layout.resolve_file("job1", "sub/a.mp4") is None


def test_cleanup_expired(tmp_path):
    layout = StorageLayout.from_config(StorageConfig(output_base=str(tmp_path)))
    _, old_files = layout.prepare("old")
    (old_files / "a.mp4").write_bytes(b"a")
    layout.prepare("fresh")

    past = time.time() - 48 * 3600
    os.utime(layout.job_dir("old"), (past, past))
    os.utime(layout.temp_dir("old"), (past, past))

    removed = cleanup_expired(layout, ttl_hours=24)

    assert removed == 2
    assert not layout.job_dir("old").exists()
    assert not layout.temp_dir("old").exists()
    assert layout.job_dir("fresh").exists()
    assert layout.temp_dir("fresh").exists()


def test_cleanup_missing_roots(tmp_path):
    assert cleanup_expired(StorageLayout(tmp_path / "nothing"), ttl_hours=1) == 0
