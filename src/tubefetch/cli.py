import argparse
import sys
import time
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from . import converter, ytdlp_runner
from .config import resolve_config
from .downloader import ItemProgress, MediaOperations
from .exceptions import TubefetchError
from .logging_config import setup_logging
from .models import DownloadOptions
from .queue import JobWorkerPool, SQLiteQueue
from .storage import StorageLayout, cleanup_expired
from .tokens import TokenSigner
from .urls import is_allowed_youtube_url, is_playlist_url

BAR_FORMAT = "{l_bar}{bar}| {n:.1f}/{total:.0f}%"


def _overrides(args) -> dict:
    """Flat CLI overrides understood by TubefetchConfig.merge_overrides."""
    keys = ("db", "workers", "output_base", "host", "port")
    return {k: getattr(args, k) for k in keys if getattr(args, k, None) is not None}


def _load_config(args):
    config_path = getattr(args, "config", None)
    return resolve_config(_overrides(args), config_path=Path(config_path) if config_path else None)


class PlaylistBars:
    """One tqdm bar per playlist item; a new item closes the previous bar."""

    def __init__(self):
        self.bar: Optional[tqdm] = None
        self.index: Optional[int] = None

    def __call__(self, item: ItemProgress) -> None:
        if item.video_index != self.index:
            self.close()
            self.index = item.video_index
            self.bar = tqdm(
                total=100,
                desc=f"[{item.video_index + 1}/{item.total_videos}] {item.video_id}",
                bar_format=BAR_FORMAT,
                leave=True,
            )
        self.bar.n = item.percent
        self.bar.refresh()

    def close(self) -> None:
        if self.bar is not None:
            self.bar.close()
            self.bar = None


def run_fetch(args) -> int:
    """One-shot download without the queue."""
    if not is_allowed_youtube_url(args.url):
        print("Only YouTube URLs are supported.")
        return 1

    config = _load_config(args)
    options = DownloadOptions(
        format=args.format, quality=args.quality, selectedVideoIds=args.select or None
    )
    operations = MediaOperations.from_config(config.downloader)
    playlist = args.playlist or is_playlist_url(args.url)

    try:
        if playlist:
            print("Fetching playlist information...")
            bars = PlaylistBars()
            try:
                result = operations.download_playlist(args.url, args.output, bars, options)
            finally:
                bars.close()
            print(f"\nDownloaded {len(result.files)} file(s) to {result.folder_path}")
        else:
            with tqdm(total=100, desc="Downloading", bar_format=BAR_FORMAT) as bar:

                def on_progress(percent: float, message: str) -> None:
                    bar.n = percent
                    bar.refresh()

                result = operations.download_video(args.url, args.output, on_progress, options)
            print(f"\nSaved to {result.file_path}")
    except TubefetchError as e:
        print(f"Error: {e}")
        return 1
    return 0


def run_worker(args) -> int:
    """Standalone worker process: drains the shared queue database."""
    config = _load_config(args)
    queue = SQLiteQueue.from_config(config.queue)
    pool = JobWorkerPool(
        queue,
        None,
        StorageLayout.from_config(config.storage),
        TokenSigner.from_config(config.server),
        config,
    )

    if args.once:
        processed = pool.run_until_empty(max_jobs=args.max_jobs)
        print(f"Processed {processed} job(s)")
        return 0

    print(f"Worker pool running with {config.worker.concurrency} thread(s). Ctrl+C to stop.")
    with pool:
        try:
            while pool.running:
                time.sleep(1)
        except KeyboardInterrupt:
            print("\nStopping workers (in-flight jobs finish first)...")
    return 0


def run_serve(args) -> int:
    import uvicorn

    from .api.main import create_app

    config = _load_config(args)
    app = create_app(config, start_workers=not args.no_workers)
    uvicorn.run(app, host=config.server.host, port=config.server.port)
    return 0


def print_queue_status(queue: SQLiteQueue) -> None:
    stats = queue.get_stats()
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    print(f"Waiting:              {stats['waiting']}")
    print(f"Active:               {stats['active']}")
    print(f"Completed:            {stats['completed']}")
    print(f"Failed:               {stats['failed']}")
    print(f"Total:                {stats['total']}")
    print(f"Dead letters:         {stats['dead_letters']}")
    print("=" * 60)


def print_dead_letters(queue: SQLiteQueue) -> None:
    letters = queue.get_dead_letters()
    if not letters:
        print("No dead letters.")
        return
    for letter in letters:
        print(f"{letter.failed_at.isoformat(timespec='seconds')}  {letter.job_id}  {letter.kind}")
        print(f"    url:      {letter.payload.get('url')}")
        print(f"    attempts: {letter.attempts}")
        print(f"    error:    {letter.error}")


def main(argv=None):
    parser = argparse.ArgumentParser(prog="tubefetch", description="YouTube download service")
    parser.add_argument("--config", type=str, help="Path to a YAML config file")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    parser.add_argument("--log-file", type=str, help="Also write logs to this file")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API with its worker pool")
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port")
    serve_parser.add_argument("--workers", "-w", type=int, help="Number of worker threads")
    serve_parser.add_argument("--db", type=str, help="Queue database path")
    serve_parser.add_argument("--output-base", type=str, help="Root for storage/ and tmp/")
    serve_parser.add_argument(
        "--no-workers", action="store_true", help="API only; run workers separately"
    )

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run a standalone worker pool")
    worker_parser.add_argument("--workers", "-w", type=int, help="Number of worker threads")
    worker_parser.add_argument("--db", type=str, help="Queue database path")
    worker_parser.add_argument("--output-base", type=str, help="Root for storage/ and tmp/")
    worker_parser.add_argument(
        "--once", action="store_true", help="Process due jobs and exit"
    )
    worker_parser.add_argument("--max-jobs", type=int, help="Maximum jobs with --once")

    # FETCH
    fetch_parser = subparsers.add_parser("fetch", help="Download a video or playlist directly")
    fetch_parser.add_argument("url", type=str, help="YouTube video or playlist URL")
    fetch_parser.add_argument("--output", "-o", type=str, default="downloads", help="Output directory")
    fetch_parser.add_argument("--format", choices=["mp4", "mp3"], default="mp4")
    fetch_parser.add_argument(
        "--quality", choices=["best", "1080p", "720p", "audio"], default="best"
    )
    fetch_parser.add_argument("--playlist", action="store_true", help="Treat URL as a playlist")
    fetch_parser.add_argument(
        "--select", nargs="+", metavar="VIDEO_ID", help="Only these playlist items"
    )

    # CHECK
    subparsers.add_parser("check", help="Verify dependencies")

    # CLEANUP
    cleanup_parser = subparsers.add_parser("cleanup", help="Delete expired storage and tmp entries")
    cleanup_parser.add_argument("--output-base", type=str, help="Root for storage/ and tmp/")
    cleanup_parser.add_argument("--ttl-hours", type=float, help="Override storage TTL")

    # QUEUE subcommands (status, dead-letters, clear, prune)
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    status_parser = queue_subparsers.add_parser("status", help="Show queue status")
    status_parser.add_argument("--db", type=str, help="Queue database path")

    dead_parser = queue_subparsers.add_parser("dead-letters", help="List dead-lettered jobs")
    dead_parser.add_argument("--db", type=str, help="Queue database path")

    clear_parser = queue_subparsers.add_parser("clear", help="Delete failed jobs and dead letters")
    clear_parser.add_argument("--db", type=str, help="Queue database path")

    prune_parser = queue_subparsers.add_parser("prune", help="Delete expired completed jobs")
    prune_parser.add_argument("--db", type=str, help="Queue database path")

    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    if args.command == "serve":
        return run_serve(args)

    elif args.command == "worker":
        return run_worker(args)

    elif args.command == "fetch":
        code = run_fetch(args)
        if code:
            sys.exit(code)

    elif args.command == "check":
        print("Checking dependencies...")
        config = _load_config(args)
        ok = True
        version = ytdlp_runner.check_ytdlp(config.downloader.ytdlp_binary)
        if version:
            print(f"✅ yt-dlp found ({version}).")
        else:
            print(f"❌ yt-dlp NOT found ({config.downloader.ytdlp_binary}).")
            ok = False
        if converter.check_ffmpeg():
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            ok = False
        if not ok:
            sys.exit(1)

    elif args.command == "cleanup":
        config = _load_config(args)
        ttl = args.ttl_hours if args.ttl_hours is not None else config.storage.ttl_hours
        removed = cleanup_expired(StorageLayout.from_config(config.storage), ttl)
        print(f"Removed {removed} expired entr{'y' if removed == 1 else 'ies'} (TTL {ttl}h)")

    elif args.command == "queue":
        if args.queue_command is None:
            queue_parser.print_help()
            return 0

        config = _load_config(args)
        queue = SQLiteQueue.from_config(config.queue)

        if args.queue_command == "status":
            print_queue_status(queue)

        elif args.queue_command == "dead-letters":
            print_dead_letters(queue)

        elif args.queue_command == "clear":
            cleared = queue.clear_failed()
            print(f"Cleared {cleared} failed job(s)")

        elif args.queue_command == "prune":
            pruned = queue.prune_completed(config.queue.remove_on_complete_age_s)
            print(f"Pruned {pruned} completed job(s)")

    else:
        parser.print_help()

    return 0


if __name__ == "__main__":
    main()
