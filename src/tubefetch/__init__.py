"""tubefetch: queued YouTube video and playlist downloads with live progress."""

__version__ = "0.1.0"
