from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from backend.archiver.config import AppSettings
from backend.archiver.platforms.base import PlatformSource
from backend.archiver.platforms.token_cache import TokenCache
from backend.archiver.repositories.archive_store import ArchiveStore
from backend.archiver.repositories.jobs_repository import JobsRepository
from backend.archiver.telemetry import TelemetryClient

if TYPE_CHECKING:
    from backend.archiver.services.job_registry import JobRegistry
    from backend.archiver.services.live_service import LiveService
    from backend.archiver.services.media_processor import MediaProcessor


class DependencyMissing(RuntimeError):
    """A handler needed a collaborator the process was not wired with."""

    retryable = False

    def __init__(self, name: str) -> None:
        super().__init__(f"{name} not found in context")
        self.name = name


@dataclass(frozen=True)
class JobContext:
    """Process-wide collaborators handed to every job handler.

    Built once at startup. Fields stay optional so partially wired processes
    (tests, the CLI) can run the handlers they have dependencies for.
    """

    settings: AppSettings
    store: ArchiveStore | None = None
    jobs: JobsRepository | None = None
    registry: JobRegistry | None = None
    platform: PlatformSource | None = None
    live_service: LiveService | None = None
    media: MediaProcessor | None = None
    token_cache: TokenCache | None = None
    telemetry: TelemetryClient = field(default_factory=TelemetryClient.disabled)

    def require_store(self) -> ArchiveStore:
        if self.store is None:
            raise DependencyMissing("store")
        return self.store

    def require_jobs(self) -> JobsRepository:
        if self.jobs is None:
            raise DependencyMissing("jobs repository")
        return self.jobs

    def require_registry(self) -> JobRegistry:
        if self.registry is None:
            raise DependencyMissing("job registry")
        return self.registry

    def require_platform(self) -> PlatformSource:
        if self.platform is None:
            raise DependencyMissing("platform")
        return self.platform

    def require_live_service(self) -> LiveService:
        if self.live_service is None:
            raise DependencyMissing("live service")
        return self.live_service

    def require_media(self) -> MediaProcessor:
        if self.media is None:
            raise DependencyMissing("media processor")
        return self.media

    def require_token_cache(self) -> TokenCache:
        if self.token_cache is None:
            raise DependencyMissing("token cache")
        return self.token_cache
