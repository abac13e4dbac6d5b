from __future__ import annotations

from functools import lru_cache

from backend.archiver.config import AppSettings, load_settings
from backend.archiver.platforms.base import PlatformSource
from backend.archiver.platforms.kick import KickSource
from backend.archiver.platforms.token_cache import TokenCache
from backend.archiver.platforms.twitch import TwitchSource
from backend.archiver.repositories.archive_store import ArchiveStore
from backend.archiver.repositories.database import Database
from backend.archiver.repositories.jobs_repository import JobsRepository
from backend.archiver.services.archive_tasks import build_default_registry, default_periodic_rules
from backend.archiver.services.job_context import JobContext
from backend.archiver.services.job_registry import JobRegistry
from backend.archiver.services.live_service import LiveService
from backend.archiver.services.media_processor import SubprocessMediaProcessor
from backend.archiver.services.periodic_scheduler import PeriodicScheduler
from backend.archiver.services.worker_pool import WorkerPool
from backend.archiver.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_jobs_repository() -> JobsRepository:
    return JobsRepository(get_database())


@lru_cache(maxsize=1)
def get_archive_store() -> ArchiveStore:
    return ArchiveStore(get_database())


@lru_cache(maxsize=1)
def get_registry() -> JobRegistry:
    return build_default_registry()


@lru_cache(maxsize=1)
def get_token_cache() -> TokenCache:
    return TokenCache()


@lru_cache(maxsize=1)
def get_platform() -> PlatformSource:
    return build_platform(get_settings(), get_token_cache())


def build_platform(settings: AppSettings, token_cache: TokenCache) -> PlatformSource:
    if settings.platform == "kick":
        return KickSource(
            client_id=settings.kick_client_id or "",
            client_secret=settings.kick_client_secret or "",
            token_cache=token_cache,
            max_attempts=settings.http_max_attempts,
            retry_delay_seconds=settings.http_retry_delay_seconds,
            http_timeout_seconds=settings.http_timeout_seconds,
            chat_page_delay_seconds=settings.chat_page_delay_seconds,
        )
    return TwitchSource(
        client_id=settings.twitch_client_id or "",
        client_secret=settings.twitch_client_secret or "",
        token_cache=token_cache,
        gql_oauth_token=settings.twitch_gql_oauth_token,
        max_attempts=settings.http_max_attempts,
        retry_delay_seconds=settings.http_retry_delay_seconds,
        http_timeout_seconds=settings.http_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_job_context() -> JobContext:
    settings = get_settings()
    platform = get_platform()
    return JobContext(
        settings=settings,
        store=get_archive_store(),
        jobs=get_jobs_repository(),
        registry=get_registry(),
        platform=platform,
        live_service=LiveService(
            platform=platform,
            store=get_archive_store(),
            jobs=get_jobs_repository(),
            registry=get_registry(),
        ),
        media=SubprocessMediaProcessor(
            streamlink_bin=settings.streamlink_bin,
            ffmpeg_bin=settings.ffmpeg_bin,
            chat_downloader_bin=settings.chat_downloader_bin,
            http_timeout_seconds=settings.http_timeout_seconds,
        ),
        token_cache=get_token_cache(),
        telemetry=get_telemetry(),
    )


def build_worker_pool() -> WorkerPool:
    settings = get_settings()
    return WorkerPool(
        registry=get_registry(),
        jobs=get_jobs_repository(),
        context=get_job_context(),
        queue_concurrency=settings.queue_concurrency(),
        retry_base_seconds=settings.job_retry_base_seconds,
        retry_max_seconds=settings.job_retry_max_seconds,
        poll_interval_seconds=settings.worker_poll_interval_seconds,
        heartbeat_interval_seconds=settings.heartbeat_interval_seconds,
        telemetry=get_telemetry(),
    )


def build_periodic_scheduler() -> PeriodicScheduler:
    return PeriodicScheduler(
        registry=get_registry(),
        jobs=get_jobs_repository(),
        rules=default_periodic_rules(get_settings()),
        telemetry=get_telemetry(),
    )


def reset_cached_dependencies() -> None:
    get_job_context.cache_clear()
    get_telemetry.cache_clear()
    get_platform.cache_clear()
    get_token_cache.cache_clear()
    get_registry.cache_clear()
    get_archive_store.cache_clear()
    get_jobs_repository.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
