"""YouTube URL allow-list."""

import re
from urllib.parse import urlparse

from .exceptions import ValidationError

ALLOWED_HOSTS = ("youtube.com", "youtu.be")

PLAYLIST_RE = re.compile(r"[?&]list=")


def is_allowed_youtube_url(value) -> bool:
    """True for http(s) URLs on youtube.com, its subdomains, or youtu.be."""
    if not isinstance(value, str) or not value:
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False

    if parsed.scheme not in ("http", "https"):
        return False

    host = (parsed.hostname or "").lower()
    if host in ALLOWED_HOSTS:
        return True
    return host.endswith(".youtube.com")


def is_playlist_url(value: str) -> bool:
    return bool(PLAYLIST_RE.search(value or ""))


def validate_url(value) -> str:
    """Return ``value`` or raise ValidationError."""
    if not value or not isinstance(value, str):
        raise ValidationError("Missing required field: url")
    if not is_allowed_youtube_url(value):
        raise ValidationError("Only YouTube URLs are supported")
    return value
