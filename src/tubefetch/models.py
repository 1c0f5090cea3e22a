"""Pydantic models for configuration and data validation."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class DownloaderConfig(BaseModel):
    """yt-dlp / ffmpeg invocation parameters."""

    ytdlp_binary: str = Field(default="yt-dlp", description="yt-dlp executable name or path")
    timeout_s: int = Field(
        default=3600, gt=0, description="Wall-clock limit for one yt-dlp process in seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    video_format: str = Field(
        default="bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best",
        description="yt-dlp format selector for mp4 downloads",
    )
    audio_format: str = Field(
        default="bestaudio[ext=m4a]/bestaudio/best",
        description="yt-dlp format selector for mp3 downloads",
    )
    audio_bitrate: str = Field(default="192k", description="mp3 bitrate passed to ffmpeg")
    stderr_tail_lines: int = Field(
        default=20, gt=0, description="Lines of stderr kept for failure messages"
    )
    analyze_timeout_s: int = Field(
        default=60, gt=0, description="Timeout for playlist/metadata lookups"
    )


class QueueConfig(BaseModel):
    """Job queue persistence and retry policy."""

    db_path: str = Field(default="data/queue.db", description="SQLite database path")
    max_attempts: int = Field(default=3, ge=1, description="Attempts before a job is dead-lettered")
    backoff_delay_s: float = Field(
        default=5.0, ge=0.0, description="Base delay for exponential retry backoff"
    )
    remove_on_complete_age_s: int = Field(
        default=3600, gt=0, description="Completed jobs older than this may be pruned"
    )
    stale_timeout_s: int = Field(
        default=7200, gt=0, description="Active jobs without heartbeat for this long are reset"
    )


class WorkerConfig(BaseModel):
    """Worker pool sizing and polling."""

    concurrency: int = Field(default=2, ge=1, description="Concurrent job executions")
    poll_interval_s: float = Field(default=1.0, gt=0.0, description="Idle poll interval")
    heartbeat_interval_s: float = Field(
        default=60.0, gt=0.0, description="Heartbeat period for active jobs"
    )


class StorageConfig(BaseModel):
    """Filesystem layout for temporary and durable artifacts."""

    output_base: str = Field(default=".", description="Root holding storage/ and tmp/")
    ttl_hours: float = Field(default=24.0, gt=0.0, description="Retention for cleanup sweeps")


class ServerConfig(BaseModel):
    """HTTP boundary settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, gt=0, le=65535)
    api_key: Optional[str] = Field(
        default=None, description="Required x-api-key for playlist submissions when set"
    )
    token_secret: str = Field(
        default="change-me", min_length=1, description="HMAC secret for download tokens"
    )
    token_ttl_s: int = Field(default=86400, gt=0, description="Download link lifetime")
    keepalive_s: float = Field(default=25.0, gt=0.0, description="SSE heartbeat interval")
    rate_limit_window_s: float = Field(default=60.0, gt=0.0)
    rate_limit_max: int = Field(default=20, ge=1)


class TubefetchConfig(BaseModel):
    """Complete application configuration with validation."""

    downloader: DownloaderConfig = Field(default_factory=DownloaderConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "TubefetchConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_overrides(self, overrides: dict) -> "TubefetchConfig":
        """Apply flat CLI overrides and return a new config instance."""
        config_dict = self.model_dump()

        if overrides.get("db") is not None:
            config_dict["queue"]["db_path"] = overrides["db"]
        if overrides.get("workers") is not None:
            config_dict["worker"]["concurrency"] = overrides["workers"]
        if overrides.get("output_base") is not None:
            config_dict["storage"]["output_base"] = overrides["output_base"]
        if overrides.get("host") is not None:
            config_dict["server"]["host"] = overrides["host"]
        if overrides.get("port") is not None:
            config_dict["server"]["port"] = overrides["port"]

        return TubefetchConfig.from_dict(config_dict)


class DownloadOptions(BaseModel):
    """Per-job download options shared by video and playlist requests."""

    format: Literal["mp4", "mp3"] = "mp4"
    quality: Literal["best", "1080p", "720p", "audio"] = "best"
    selectedVideoIds: Optional[list[str]] = None  # noqa: N815

    @field_validator("selectedVideoIds")
    @classmethod
    def drop_blank_ids(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        """Strip whitespace-only ids so an all-blank list means "everything"."""
        if v is None:
            return None
        cleaned = [item.strip() for item in v if item and item.strip()]
        return cleaned or None
