from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from backend.archiver.models.job_contracts import JobDescriptor
from backend.archiver.repositories.jobs_repository import JobsRepository


class DuplicateJobKindError(ValueError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"job kind registered twice: {kind}")
        self.kind = kind


class UnknownJobKindError(LookupError):
    retryable = False

    def __init__(self, kind: str) -> None:
        super().__init__(f"unknown job kind: {kind}")
        self.kind = kind


class JobRegistry:
    """Immutable kind -> descriptor table, validated when built."""

    def __init__(self, descriptors: Iterable[JobDescriptor]) -> None:
        table: dict[str, JobDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.kind in table:
                raise DuplicateJobKindError(descriptor.kind)
            table[descriptor.kind] = descriptor
        self._descriptors: Mapping[str, JobDescriptor] = table

    def __contains__(self, kind: object) -> bool:
        return kind in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def get(self, kind: str) -> JobDescriptor:
        descriptor = self._descriptors.get(kind)
        if descriptor is None:
            raise UnknownJobKindError(kind)
        return descriptor

    def kinds(self) -> list[str]:
        return sorted(self._descriptors)

    def queues(self) -> list[str]:
        return sorted({descriptor.queue for descriptor in self._descriptors.values()})

    def enqueue(
        self,
        jobs: JobsRepository,
        kind: str,
        args: dict[str, Any] | None = None,
        *,
        available_at: datetime | None = None,
    ) -> str:
        descriptor = self.get(kind)
        return jobs.enqueue(
            kind=descriptor.kind,
            queue=descriptor.queue,
            args=dict(args or {}),
            max_attempts=descriptor.max_attempts,
            available_at=available_at,
        )
