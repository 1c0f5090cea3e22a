"""Video and playlist media operations.

Both operations drive :class:`~tubefetch.ytdlp_runner.YtdlpRunner` one
process at a time and optionally convert the result to mp3. Neither returns
partial results: the first failure aborts the whole operation.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from .converter import convert_to_mp3
from .exceptions import MediaOperationError, TubefetchError, ValidationError
from .models import DownloaderConfig, DownloadOptions
from .playlist import PlaylistFetcher, PlaylistListing, select_items
from .ytdlp_runner import YtdlpRunner, ensure_directory

logger = logging.getLogger(__name__)

OUTPUT_TEMPLATE = "%(title)s.%(ext)s"

QUALITY_HEIGHTS = {"1080p": 1080, "720p": 720}


@dataclass
class ItemProgress:
    """Progress of one playlist item."""

    video_index: int
    total_videos: int
    video_id: str
    percent: float
    message: str


@dataclass
class VideoResult:
    file_path: str
    format: str


@dataclass
class PlaylistResult:
    folder_path: str
    files: List[str] = field(default_factory=list)


def sanitize_name(value: Optional[str]) -> str:
    """Make a title safe to use as a file or directory name."""
    cleaned = re.sub(r"[^\w\s-]", "", value or "untitled")
    cleaned = re.sub(r"\s+", "_", cleaned).strip()
    return cleaned or "untitled"


def format_selector(options: DownloadOptions, config: DownloaderConfig) -> str:
    """Pick the yt-dlp ``-f`` selector for the requested format and quality."""
    if options.format == "mp3" or options.quality == "audio":
        return config.audio_format

    height = QUALITY_HEIGHTS.get(options.quality)
    if height is None:
        return config.video_format
    return (
        f"bestvideo[height<={height}][ext=mp4]+bestaudio[ext=m4a]"
        f"/best[height<={height}][ext=mp4]/best[height<={height}]"
    )


class MediaOperations:
    """Runs the video and playlist download flows with injected collaborators.

    Args:
        runner: Subprocess execution unit (one process per work item)
        fetch_listing: ``fetch_listing(url) -> PlaylistListing``
        converter: ``converter(path, bitrate=...) -> mp3 path``
        config: Format selectors and audio bitrate
    """

    def __init__(
        self,
        runner: YtdlpRunner,
        fetch_listing: Callable[[str], PlaylistListing],
        converter: Callable[..., str] = convert_to_mp3,
        config: Optional[DownloaderConfig] = None,
    ):
        self.runner = runner
        self.fetch_listing = fetch_listing
        self.converter = converter
        self.config = config or DownloaderConfig()

    @classmethod
    def from_config(cls, config: DownloaderConfig) -> "MediaOperations":
        """Wire the yt-dlp runner, playlist fetcher and ffmpeg converter."""
        return cls(
            runner=YtdlpRunner.from_config(config),
            fetch_listing=PlaylistFetcher(config.ytdlp_binary, timeout_s=config.analyze_timeout_s),
            config=config,
        )

    def _convert(self, path: str) -> str:
        return self.converter(path, bitrate=self.config.audio_bitrate)

    def download_video(
        self,
        video_url: str,
        output_dir,
        progress_callback: Optional[Callable[[float, str], None]] = None,
        options: Optional[DownloadOptions] = None,
    ) -> VideoResult:
        """Download a single video, converting to mp3 when requested."""
        if not video_url:
            raise ValidationError("Video URL is required.")
        if not output_dir:
            raise ValidationError("An output directory is required.")

        options = options or DownloadOptions()
        on_progress = progress_callback or (lambda percent, message: None)
        resolved_dir = ensure_directory(Path(output_dir).resolve())
        highest = [0.0]

        def wrapped_progress(percent: float, message: str) -> None:
            percent = min(100.0, percent or 0.0)
            highest[0] = max(highest[0], percent)
            on_progress(percent, message or "Downloading video")

        try:
            downloaded = self.runner.download(
                video_url,
                str(resolved_dir / OUTPUT_TEMPLATE),
                format_selector(options, self.config),
                wrapped_progress,
            )
            final_path = self._convert(downloaded) if options.format == "mp3" else downloaded
        except TubefetchError as e:
            raise MediaOperationError(f"Failed to download video: {e}", cause=e) from e

        if highest[0] < 100.0:
            on_progress(100.0, "Download complete")

        return VideoResult(file_path=final_path, format=options.format)

    def download_playlist(
        self,
        playlist_url: str,
        output_dir,
        progress_callback: Optional[Callable[[ItemProgress], None]] = None,
        options: Optional[DownloadOptions] = None,
    ) -> PlaylistResult:
        """Download the selected items of a playlist one after another."""
        if not playlist_url:
            raise ValidationError("Playlist URL is required.")
        if not output_dir:
            raise ValidationError("An output directory is required.")

        options = options or DownloadOptions()
        on_progress = progress_callback or (lambda progress: None)
        resolved_dir = Path(output_dir).resolve()

        listing = self.fetch_listing(playlist_url)
        items = select_items(listing, options.selectedVideoIds)

        playlist_dir = ensure_directory(resolved_dir / sanitize_name(listing.title))
        selector = format_selector(options, self.config)
        total = len(items)
        files: List[str] = []
        used_names = set()

        for index, item in enumerate(items):
            name = sanitize_name(item.title or f"video_{index + 1}")
            if name in used_names:
                name = f"{name}_{index + 1}"
            used_names.add(name)
            highest = [0.0]

            def item_progress(percent, message, index=index, item=item, name=name, highest=highest):
                percent = min(100.0, percent or 0.0)
                highest[0] = max(highest[0], percent)
                on_progress(
                    ItemProgress(
                        video_index=index,
                        total_videos=total,
                        video_id=item.id,
                        percent=percent,
                        message=message or f'Downloading "{name}" ({index + 1}/{total})',
                    )
                )

            logger.info("Playlist item %d/%d: %s", index + 1, total, item.id)
            try:
                downloaded = self.runner.download(
                    item.url, str(playlist_dir / f"{name}.%(ext)s"), selector, item_progress
                )
                final_path = self._convert(downloaded) if options.format == "mp3" else downloaded
            except TubefetchError as e:
                raise MediaOperationError(
                    f'Failed to download "{item.title or item.id}": {e}', cause=e
                ) from e

            if highest[0] < 100.0:
                item_progress(100.0, f'Downloaded "{name}" ({index + 1}/{total})')
            files.append(final_path)

        return PlaylistResult(folder_path=str(playlist_dir), files=files)
