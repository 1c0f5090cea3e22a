"""Parsing of yt-dlp progress output.

yt-dlp reports progress as free text, e.g.::

    [download] Destination: /tmp/job/My Video.f137.mp4
    [download]  42.3% of ~ 12.34MiB at  1.21MiB/s ETA 00:08
    [Merger] Merging formats into "/tmp/job/My Video.mp4"

Everything here is pure: functions take text and return values, never raise,
and treat anything they do not recognize as noise.
"""

import re
from dataclasses import dataclass
from typing import Optional

PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)%")
DESTINATION_RE = re.compile(r"Destination:\s(.+)")
MERGE_RE = re.compile(r'Merging formats into "(.+)"')
ALREADY_DOWNLOADED_RE = re.compile(r"\[download\]\s(.+?) has already been downloaded")


@dataclass(frozen=True)
class ParsedLine:
    """Result of parsing one chunk of subprocess output."""

    percent: Optional[float] = None
    path: Optional[str] = None
    message: str = ""

    @property
    def is_noise(self) -> bool:
        return self.percent is None and self.path is None


def parse_percentage(text: str) -> Optional[float]:
    """Extract the first ``NN[.NN]%`` value, clamped to 0..100."""
    if not text:
        return None
    match = PERCENT_RE.search(text)
    if not match:
        return None
    try:
        value = float(match.group(1))
    except ValueError:
        return None
    return max(0.0, min(100.0, value))


def parse_destination(text: str) -> Optional[str]:
    """Extract the final output path from a marker line, if any.

    The merge marker wins over ``Destination:`` because the destination lines
    name the per-stream fragments that the merge step replaces.
    """
    if not text:
        return None

    merge = MERGE_RE.search(text)
    if merge:
        return merge.group(1).strip()

    destination = DESTINATION_RE.search(text)
    if destination:
        return destination.group(1).strip().strip('"')

    cached = ALREADY_DOWNLOADED_RE.search(text)
    if cached:
        return cached.group(1).strip()

    return None


def parse_line(chunk: str) -> ParsedLine:
    """Parse a chunk that may hold several lines.

    The last percentage and the last path found in the chunk win, matching
    the order in which the tool printed them.
    """
    if not chunk:
        return ParsedLine()

    percent = None
    path = None
    for line in chunk.splitlines():
        line_path = parse_destination(line)
        if line_path:
            # titles like "100% Pure" must not count as progress
            path = line_path
            continue
        line_percent = parse_percentage(line)
        if line_percent is not None:
            percent = line_percent

    return ParsedLine(percent=percent, path=path, message=chunk.strip())


class ProgressTracker:
    """Monotonic high-water mark for one work item.

    yt-dlp reprints percentages (and restarts at 0 for the second stream of
    a merged download); only values at or above the mark are accepted.
    """

    def __init__(self):
        self.percent = 0.0
        self.accepted = 0

    def observe(self, percent: Optional[float]) -> bool:
        """Record ``percent`` and return True if it should be reported."""
        if percent is None or percent < self.percent:
            return False
        self.percent = percent
        self.accepted += 1
        return True

    @property
    def reported_complete(self) -> bool:
        return self.percent >= 100.0
