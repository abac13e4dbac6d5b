from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from structlog.contextvars import get_contextvars

from backend.archiver import deadline
from backend.archiver.config import AppSettings
from backend.archiver.models.job_contracts import (
    QUEUE_CHAT_DOWNLOAD,
    QUEUE_CHAT_RENDER,
    QUEUE_VIDEO_DOWNLOAD,
    QUEUE_VIDEO_POSTPROCESS,
    JobDescriptor,
    JobInstance,
)
from backend.archiver.platforms.errors import NotFound
from backend.archiver.repositories.common import utc_now
from backend.archiver.repositories.jobs_repository import JobsRepository
from backend.archiver.services.archive_tasks import build_default_registry
from backend.archiver.services.job_context import JobContext
from backend.archiver.services.job_registry import (
    DuplicateJobKindError,
    JobRegistry,
    UnknownJobKindError,
)
from backend.archiver.services.worker_pool import (
    DiscardHook,
    WorkerPool,
    retry_backoff_seconds,
)


def _noop(context: JobContext, job: JobInstance) -> None:
    _ = (context, job)


def _pool(
    registry: JobRegistry,
    jobs: JobsRepository,
    settings: AppSettings,
    *,
    on_discard: DiscardHook | None = None,
    queue_concurrency: dict[str, int] | None = None,
    poll_interval_seconds: float = 1.0,
) -> WorkerPool:
    return WorkerPool(
        registry=registry,
        jobs=jobs,
        context=JobContext(settings=settings, jobs=jobs, registry=registry),
        queue_concurrency=queue_concurrency,
        retry_base_seconds=0,
        poll_interval_seconds=poll_interval_seconds,
        on_discard=on_discard,
    )


def test_claim_skips_jobs_that_are_not_yet_available(jobs_repository: JobsRepository) -> None:
    later = jobs_repository.enqueue(
        kind="later",
        queue="default",
        args={},
        max_attempts=1,
        available_at=utc_now() + timedelta(hours=1),
    )
    now_id = jobs_repository.enqueue(kind="now", queue="default", args={"x": 1}, max_attempts=3)

    claimed = jobs_repository.claim_next("default")

    assert claimed is not None
    assert claimed.job_id == now_id
    assert claimed.state == "running"
    assert claimed.attempt == 1
    assert claimed.args == {"x": 1}
    assert jobs_repository.claim_next("default") is None
    pending = jobs_repository.get(later)
    assert pending is not None
    assert pending.state == "pending"


def test_claim_only_reads_its_own_queue(jobs_repository: JobsRepository) -> None:
    jobs_repository.enqueue(kind="render", queue=QUEUE_CHAT_RENDER, args={}, max_attempts=1)

    assert jobs_repository.claim_next("default") is None
    assert jobs_repository.claim_next(QUEUE_CHAT_RENDER) is not None


def test_counts_and_stale_detection(jobs_repository: JobsRepository) -> None:
    claimed_at = utc_now() - timedelta(minutes=10)
    job_id = jobs_repository.enqueue(
        kind="k",
        queue="default",
        args={},
        max_attempts=2,
        available_at=claimed_at,
    )
    jobs_repository.claim_next("default", now=claimed_at)

    counts = jobs_repository.counts_by_state()
    assert counts["running"] == 1
    assert counts["pending"] == 0
    assert counts["discarded"] == 0

    stale = jobs_repository.list_stale_running(utc_now() - timedelta(minutes=5))
    assert [job.job_id for job in stale] == [job_id]

    assert jobs_repository.touch_heartbeats([job_id]) == 1
    assert jobs_repository.list_stale_running(utc_now() - timedelta(minutes=5)) == []


def test_registry_rejects_duplicate_kinds() -> None:
    with pytest.raises(DuplicateJobKindError):
        JobRegistry([JobDescriptor(kind="a", handler=_noop), JobDescriptor(kind="a", handler=_noop)])


def test_registry_enqueue_applies_descriptor_policy(jobs_repository: JobsRepository) -> None:
    registry = JobRegistry(
        [JobDescriptor(kind="render", handler=_noop, queue=QUEUE_CHAT_RENDER, max_attempts=7)]
    )

    job_id = registry.enqueue(jobs_repository, "render", {"video_id": "v"})

    job = jobs_repository.get(job_id)
    assert job is not None
    assert job.queue == QUEUE_CHAT_RENDER
    assert job.max_attempts == 7
    with pytest.raises(UnknownJobKindError):
        registry.enqueue(jobs_repository, "missing")


def test_job_descriptor_validates_policy() -> None:
    with pytest.raises(ValueError):
        JobDescriptor(kind="bad", handler=_noop, max_attempts=0)
    with pytest.raises(ValueError):
        JobDescriptor(kind="bad", handler=_noop, timeout=timedelta(0))


def test_default_registry_routes_heavy_work_to_dedicated_queues() -> None:
    registry = build_default_registry()

    assert registry.get("task_video_download").queue == QUEUE_VIDEO_DOWNLOAD
    assert registry.get("task_video_convert").queue == QUEUE_VIDEO_POSTPROCESS
    assert registry.get("task_chat_download").queue == QUEUE_CHAT_DOWNLOAD
    assert registry.get("task_chat_render").queue == QUEUE_CHAT_RENDER
    assert registry.get("task_video_download").timeout == timedelta(hours=49)
    assert registry.get("archive-watchdog").max_attempts == 1
    assert "import_categories" in registry


def test_retry_backoff_grows_and_caps() -> None:
    assert retry_backoff_seconds(1, base_seconds=5, max_seconds=600) == 5
    assert retry_backoff_seconds(3, base_seconds=5, max_seconds=600) == 20
    assert retry_backoff_seconds(12, base_seconds=5, max_seconds=600) == 600
    assert retry_backoff_seconds(2, base_seconds=0, max_seconds=600) == 0


def test_pool_marks_successful_job(jobs_repository: JobsRepository, settings: AppSettings) -> None:
    seen: list[dict[str, object]] = []

    def handler(context: JobContext, job: JobInstance) -> None:
        seen.append(job.args)

    registry = JobRegistry([JobDescriptor(kind="ok", handler=handler)])
    registry.enqueue(jobs_repository, "ok", {"n": 1})

    result = _pool(registry, jobs_repository, settings).process_next("default")

    assert result is not None
    assert result.state == "succeeded"
    assert result.attempt == 1
    assert seen == [{"n": 1}]


def test_pool_retries_then_discards(jobs_repository: JobsRepository, settings: AppSettings) -> None:
    discarded: list[tuple[str, str]] = []

    def handler(context: JobContext, job: JobInstance) -> None:
        raise RuntimeError(f"attempt {job.attempt} failed")

    registry = JobRegistry([JobDescriptor(kind="flaky", handler=handler, max_attempts=3)])
    registry.enqueue(jobs_repository, "flaky")
    pool = _pool(
        registry,
        jobs_repository,
        settings,
        on_discard=lambda job, exc: discarded.append((job.job_id, str(exc))),
    )

    states = []
    for _ in range(3):
        job = pool.process_next("default")
        assert job is not None
        states.append((job.state, job.attempt))

    assert states == [("retryable", 1), ("retryable", 2), ("discarded", 3)]
    assert pool.process_next("default") is None
    assert len(discarded) == 1
    assert discarded[0][1] == "attempt 3 failed"


def test_pool_schedules_retry_with_backoff(jobs_repository: JobsRepository, settings: AppSettings) -> None:
    def handler(context: JobContext, job: JobInstance) -> None:
        raise RuntimeError("later")

    registry = JobRegistry([JobDescriptor(kind="flaky", handler=handler)])
    registry.enqueue(jobs_repository, "flaky")
    pool = WorkerPool(
        registry=registry,
        jobs=jobs_repository,
        context=JobContext(settings=settings),
        retry_base_seconds=60,
    )

    job = pool.process_next("default")

    assert job is not None
    assert job.state == "retryable"
    assert job.available_at > utc_now() + timedelta(seconds=30)
    assert job.last_error == "RuntimeError: later"
    assert pool.process_next("default") is None


def test_pool_discards_non_retryable_errors(jobs_repository: JobsRepository, settings: AppSettings) -> None:
    def handler(context: JobContext, job: JobInstance) -> None:
        raise NotFound("video not found: v1")

    registry = JobRegistry([JobDescriptor(kind="gone", handler=handler, max_attempts=5)])
    registry.enqueue(jobs_repository, "gone")

    job = _pool(registry, jobs_repository, settings).process_next("default")

    assert job is not None
    assert (job.state, job.attempt) == ("discarded", 1)


def test_pool_discards_when_dependency_missing(
    jobs_repository: JobsRepository,
    settings: AppSettings,
) -> None:
    def handler(context: JobContext, job: JobInstance) -> None:
        context.require_platform()

    registry = JobRegistry([JobDescriptor(kind="needs-platform", handler=handler)])
    registry.enqueue(jobs_repository, "needs-platform")

    job = _pool(registry, jobs_repository, settings).process_next("default")

    assert job is not None
    assert job.state == "discarded"
    assert job.last_error == "DependencyMissing: platform not found in context"


def test_pool_discards_unknown_kinds(jobs_repository: JobsRepository, settings: AppSettings) -> None:
    jobs_repository.enqueue(kind="ghost", queue="default", args={}, max_attempts=5)
    registry = JobRegistry([JobDescriptor(kind="ok", handler=_noop)])

    job = _pool(registry, jobs_repository, settings).process_next("default")

    assert job is not None
    assert job.state == "discarded"
    assert job.last_error is not None and "unknown job kind: ghost" in job.last_error


def test_pool_enforces_job_timeout(jobs_repository: JobsRepository, settings: AppSettings) -> None:
    def handler(context: JobContext, job: JobInstance) -> None:
        deadline.sleep(30)

    registry = JobRegistry(
        [JobDescriptor(kind="slow", handler=handler, max_attempts=2, timeout=timedelta(milliseconds=50))]
    )
    registry.enqueue(jobs_repository, "slow")

    job = _pool(registry, jobs_repository, settings).process_next("default")

    assert job is not None
    assert job.state == "retryable"
    assert job.last_error is not None and job.last_error.startswith("DeadlineExceeded")


def test_busy_queue_does_not_block_other_queues(
    jobs_repository: JobsRepository,
    settings: AppSettings,
) -> None:
    release_slow = threading.Event()
    slow_started = threading.Event()
    fast_done = threading.Event()

    def slow(context: JobContext, job: JobInstance) -> None:
        slow_started.set()
        release_slow.wait(5)

    def fast(context: JobContext, job: JobInstance) -> None:
        fast_done.set()

    registry = JobRegistry(
        [
            JobDescriptor(kind="slow", handler=slow, queue=QUEUE_VIDEO_DOWNLOAD),
            JobDescriptor(kind="fast", handler=fast, queue=QUEUE_CHAT_RENDER),
        ]
    )
    registry.enqueue(jobs_repository, "slow")
    pool = _pool(
        registry,
        jobs_repository,
        settings,
        queue_concurrency={QUEUE_VIDEO_DOWNLOAD: 1, QUEUE_CHAT_RENDER: 1},
        poll_interval_seconds=0.05,
    )
    pool.start()
    try:
        assert slow_started.wait(5)
        registry.enqueue(jobs_repository, "fast")
        assert fast_done.wait(5)
        assert not release_slow.is_set()
    finally:
        release_slow.set()
        pool.stop()

    counts = jobs_repository.counts_by_state()
    assert counts["succeeded"] == 2


def test_execute_binds_job_and_video_context(jobs_repository: JobsRepository, settings: AppSettings) -> None:
    seen: dict[str, object] = {}

    def _capture(context: JobContext, job: JobInstance) -> None:
        _ = (context, job)
        seen.update(get_contextvars())

    registry = JobRegistry([JobDescriptor(kind="capture", handler=_capture)])
    job_id = registry.enqueue(jobs_repository, "capture", {"video_id": "vid_7"})

    assert _pool(registry, jobs_repository, settings).drain("default") == 1

    assert seen["job_id"] == job_id
    assert seen["job_kind"] == "capture"
    assert seen["video_id"] == "vid_7"
    assert "video_id" not in get_contextvars()
