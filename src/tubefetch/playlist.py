"""
Playlist listing and item selection.

Listings come from ``yt-dlp --flat-playlist -J`` which prints the playlist as
one JSON document without resolving every entry.
"""

import json
import logging
import subprocess
from typing import Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from .exceptions import EmptySelection, PlaylistLookupError
from .ytdlp_runner import summarize_stderr

logger = logging.getLogger(__name__)

WATCH_URL = "https://www.youtube.com/watch?v={video_id}"


class PlaylistItem(BaseModel):
    id: str
    title: str = ""
    duration: Optional[float] = None
    channelTitle: Optional[str] = None  # noqa: N815

    @property
    def url(self) -> str:
        return WATCH_URL.format(video_id=self.id)


class PlaylistListing(BaseModel):
    title: str = ""
    type: Literal["video", "playlist"] = "playlist"
    items: List[PlaylistItem] = Field(default_factory=list)


def parse_listing(document: dict) -> PlaylistListing:
    """Turn yt-dlp's JSON document into a listing."""
    entries = document.get("entries")
    if entries is None:
        # A single video: expose it as a one-item listing
        item = PlaylistItem(
            id=str(document.get("id") or ""),
            title=document.get("title") or "",
            duration=document.get("duration"),
            channelTitle=document.get("channel") or document.get("uploader"),
        )
        return PlaylistListing(title=item.title, type="video", items=[item] if item.id else [])

    items = []
    for entry in entries:
        if not entry or not entry.get("id"):
            continue
        items.append(
            PlaylistItem(
                id=str(entry["id"]),
                title=entry.get("title") or "",
                duration=entry.get("duration"),
                channelTitle=entry.get("channel") or entry.get("uploader"),
            )
        )
    return PlaylistListing(title=document.get("title") or "", type="playlist", items=items)


class PlaylistFetcher:
    """Callable ``fetch_playlist(url) -> PlaylistListing`` backed by yt-dlp."""

    def __init__(self, binary: str = "yt-dlp", timeout_s: int = 60):
        self.binary = binary
        self.timeout_s = timeout_s

    def __call__(self, url: str) -> PlaylistListing:
        return self.fetch(url)

    def fetch(self, url: str) -> PlaylistListing:
        if not url:
            raise ValueError("Playlist URL is required.")

        cmd = [self.binary, "--flat-playlist", "-J", "--no-warnings", url]
        try:
            completed = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired as e:
            raise PlaylistLookupError(f"Playlist lookup timed out after {self.timeout_s}s") from e
        except OSError as e:
            raise PlaylistLookupError(f"Unable to start {self.binary}: {e}") from e

        if completed.returncode != 0:
            raise PlaylistLookupError(
                f"Playlist lookup failed: {summarize_stderr(completed.stderr or '')}"
            )

        try:
            document = json.loads(completed.stdout)
        except json.JSONDecodeError as e:
            raise PlaylistLookupError(f"yt-dlp returned invalid JSON: {e}") from e

        listing = parse_listing(document)
        logger.debug("Fetched listing %r with %d items", listing.title, len(listing.items))
        return listing


def select_items(
    listing: PlaylistListing, selected_ids: Optional[Iterable[str]] = None
) -> List[PlaylistItem]:
    """Resolve the working set for a playlist job.

    An explicit non-empty selection keeps exactly those ids, in playlist
    order. No selection keeps the whole listing.

    Raises:
        EmptySelection: If nothing is left to download
    """
    wanted = set(selected_ids or [])
    if wanted:
        items = [item for item in listing.items if item.id in wanted]
    else:
        items = list(listing.items)

    if not items:
        raise EmptySelection("No matching videos found in playlist.")
    return items
