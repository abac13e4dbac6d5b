from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from backend.archiver.models.job_contracts import (
    QUEUE_CHAT_DOWNLOAD,
    QUEUE_CHAT_RENDER,
    QUEUE_DEFAULT,
    QUEUE_VIDEO_DOWNLOAD,
    QUEUE_VIDEO_POSTPROCESS,
)

DEFAULT_DATA_DIR = ".vod-archiver"
PLATFORMS: frozenset[str] = frozenset({"twitch", "kick"})
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("videos_dir", Path("videos")),
    ("temp_dir", Path("tmp")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "workers_enabled",
    "telemetry_enabled",
)
_OPTIONAL_TEXT_FIELDS: tuple[str, ...] = (
    "twitch_client_id",
    "twitch_client_secret",
    "twitch_gql_oauth_token",
    "kick_client_id",
    "kick_client_secret",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{VOD_ARCHIVER_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class AppSettings(BaseSettings):
    """
    Runtime configuration for the archiver.

    Every option is read from `VOD_ARCHIVER_*` environment variables or `.env`.
    """

    model_config = SettingsConfigDict(
        env_prefix="VOD_ARCHIVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for state, logs, and archived media.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )
    videos_dir: Path = Field(
        default=_default_in_data_dir(Path("videos")),
        description=f"Archive output root. {_data_dir_default_note(Path('videos'))}",
    )
    temp_dir: Path = Field(
        default=_default_in_data_dir(Path("tmp")),
        description=f"Scratch space for in-progress media. {_data_dir_default_note(Path('tmp'))}",
    )

    # Platform and credentials.
    platform: Literal["twitch", "kick"] = Field(
        default="twitch",
        description="Streaming platform the archiver talks to.",
    )
    twitch_client_id: str | None = Field(default=None, description="Twitch application client id.")
    twitch_client_secret: str | None = Field(
        default=None,
        description="Twitch application client secret.",
    )
    twitch_gql_oauth_token: str | None = Field(
        default=None,
        description="Optional Twitch user OAuth token sent to the GraphQL side-channel.",
    )
    kick_client_id: str | None = Field(default=None, description="Kick application client id.")
    kick_client_secret: str | None = Field(default=None, description="Kick application client secret.")

    # Outbound HTTP.
    http_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per platform request when the platform answers 429.",
    )
    http_retry_delay_seconds: float = Field(
        default=5.0,
        ge=0.0,
        le=300.0,
        description="Base delay before retrying a rate-limited request; doubles per attempt.",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=300.0,
        description="Socket timeout for platform requests.",
    )
    chat_page_delay_seconds: float = Field(
        default=0.1,
        ge=0.0,
        le=10.0,
        description="Pause between chat history pages.",
    )

    # Workers and scheduling.
    workers_enabled: bool = Field(
        default=True,
        validation_alias="VOD_ARCHIVER_ENABLE_WORKERS",
        description="Start the worker pool with the API process.",
    )
    scheduler_enabled: bool = Field(
        default=True,
        validation_alias="VOD_ARCHIVER_ENABLE_SCHEDULER",
        description="Start the periodic scheduler with the API process.",
    )
    default_queue_workers: int = Field(default=4, ge=1, le=64, description="Default queue concurrency.")
    video_download_workers: int = Field(default=2, ge=1, le=64, description="Video download concurrency.")
    video_postprocess_workers: int = Field(
        default=1,
        ge=1,
        le=64,
        description="Video conversion concurrency.",
    )
    chat_download_workers: int = Field(default=2, ge=1, le=64, description="Chat download concurrency.")
    chat_render_workers: int = Field(default=1, ge=1, le=64, description="Chat render concurrency.")
    worker_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="How often idle queue dispatchers look for available jobs.",
    )
    job_retry_base_seconds: float = Field(
        default=5.0,
        ge=0.0,
        le=3600.0,
        description="First retry backoff for failed jobs; doubles per attempt.",
    )
    job_retry_max_seconds: float = Field(
        default=600.0,
        ge=0.0,
        le=86400.0,
        description="Upper bound for job retry backoff.",
    )
    heartbeat_interval_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description="How often running jobs refresh their heartbeat.",
    )
    watchdog_stale_after_seconds: float = Field(
        default=90.0,
        gt=0.0,
        le=3600.0,
        description="Running jobs without a heartbeat for this long are recovered by the watchdog.",
    )
    live_check_interval_seconds: int = Field(
        default=300,
        ge=10,
        le=86400,
        description="Interval between live channel checks.",
    )
    video_check_interval_minutes: int = Field(
        default=1440,
        ge=1,
        le=10080,
        description="Interval between new-video checks for watched channels.",
    )
    backfill_delay_seconds: float = Field(
        default=0.25,
        ge=0.0,
        le=10.0,
        description="Pause between videos during chapter and muted segment backfill.",
    )

    # Media tooling.
    streamlink_bin: str = Field(default="streamlink", description="Live and VOD downloader.")
    ffmpeg_bin: str = Field(default="ffmpeg", description="Container conversion tool.")
    chat_downloader_bin: str = Field(
        default="TwitchDownloaderCLI",
        description="Chat download and render tool.",
    )
    video_quality: str = Field(default="best", description="Quality selector passed to the downloader.")

    # Observability.
    log_level: str = Field(default="INFO", description="Console log level.")
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Log directory. {_data_dir_default_note(Path('logs'))}",
    )
    telemetry_enabled: bool = Field(default=True, description="Emit structured telemetry events.")
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink: `none` or `log`.",
    )

    def queue_concurrency(self) -> dict[str, int]:
        return {
            QUEUE_DEFAULT: self.default_queue_workers,
            QUEUE_VIDEO_DOWNLOAD: self.video_download_workers,
            QUEUE_VIDEO_POSTPROCESS: self.video_postprocess_workers,
            QUEUE_CHAT_DOWNLOAD: self.chat_download_workers,
            QUEUE_CHAT_RENDER: self.chat_render_workers,
        }

    @field_validator("platform", mode="before")
    @classmethod
    def _normalize_platform(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("VOD_ARCHIVER_PLATFORM must be a string.")
        normalized = value.strip().lower()
        if normalized in PLATFORMS:
            return normalized
        raise ValueError("VOD_ARCHIVER_PLATFORM must be set to: kick, twitch.")

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("VOD_ARCHIVER_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("VOD_ARCHIVER_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator(*_OPTIONAL_TEXT_FIELDS, mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_platform_credentials(settings: AppSettings) -> None:
    errors: list[str] = []
    if settings.platform == "twitch":
        if settings.twitch_client_id is None:
            errors.append("VOD_ARCHIVER_TWITCH_CLIENT_ID is required for the twitch platform.")
        if settings.twitch_client_secret is None:
            errors.append("VOD_ARCHIVER_TWITCH_CLIENT_SECRET is required for the twitch platform.")
    else:
        if settings.kick_client_id is None:
            errors.append("VOD_ARCHIVER_KICK_CLIENT_ID is required for the kick platform.")
        if settings.kick_client_secret is None:
            errors.append("VOD_ARCHIVER_KICK_CLIENT_SECRET is required for the kick platform.")

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(f"Invalid platform configuration for {settings.platform}:\n{bullets}")


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings(*, validate_credentials: bool = True) -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    if validate_credentials:
        _validate_platform_credentials(settings)

    return settings
