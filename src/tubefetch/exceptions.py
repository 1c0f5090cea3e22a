"""
Defines the exceptions raised across the download pipeline.

Every error carries a ``permanent`` flag. Permanent errors describe bad input
(nothing will change on a second attempt) and skip the queue's retry budget;
everything else is treated as possibly transient.
"""

from typing import Optional


class TubefetchError(Exception):
    """Base class for all tubefetch errors."""

    permanent = False


class ValidationError(TubefetchError):
    """Request rejected before enqueue (missing URL, unsupported host...)."""

    permanent = True


class QueueUnavailable(TubefetchError):
    """The queue backing store could not be reached or written."""


class OutputDirectoryError(TubefetchError):
    """An output directory could not be prepared."""


class SubprocessFailure(TubefetchError):
    """External tool exited with a non-zero or abnormal status."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr_tail: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class SubprocessTimeout(SubprocessFailure):
    """External tool exceeded its wall-clock budget and was killed."""


class UnresolvedOutputPath(TubefetchError):
    """Tool exited cleanly but never reported where it wrote the file."""


class ConversionError(TubefetchError):
    """Audio post-processing failed."""


class PlaylistLookupError(TubefetchError):
    """Playlist listing could not be fetched or parsed."""


class EmptySelection(TubefetchError):
    """No playlist item matched the requested selection."""

    permanent = True


class UnsupportedJobKind(TubefetchError):
    """Job kind has no matching media operation."""

    permanent = True


class MediaOperationError(TubefetchError):
    """A video or playlist operation failed; wraps the underlying cause."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def permanent(self) -> bool:  # type: ignore[override]
        return bool(getattr(self.cause, "permanent", False))


class EventBusClosed(TubefetchError):
    """The event bus shut down while a subscriber was waiting."""


def is_permanent(error: BaseException) -> bool:
    """Return True when retrying ``error`` cannot succeed."""
    return bool(getattr(error, "permanent", False))
