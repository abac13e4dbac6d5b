from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.archiver.deadline import Deadline, bind_deadline
from backend.archiver.models.job_contracts import (
    JOB_STATE_DISCARDED,
    JOB_STATE_RETRYABLE,
    JOB_STATE_SUCCEEDED,
    JobInstance,
    JobState,
)
from backend.archiver.repositories.common import utc_now
from backend.archiver.repositories.jobs_repository import JobsRepository
from backend.archiver.services.job_context import JobContext
from backend.archiver.services.job_registry import JobRegistry, UnknownJobKindError
from backend.archiver.telemetry import TelemetryClient

LOGGER = logging.getLogger("vod_archiver.worker_pool")

DiscardHook = Callable[[JobInstance, BaseException], None]


def is_retryable(exc: BaseException) -> bool:
    """Errors opt out of retries with a falsy `retryable` attribute."""
    return bool(getattr(exc, "retryable", True))


def retry_backoff_seconds(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    if base_seconds <= 0:
        return 0.0
    exponent = max(0, attempt - 1)
    return min(max_seconds, base_seconds * (2**exponent))


def _video_context(job: JobInstance) -> dict[str, str]:
    video_id = job.args.get("video_id")
    if isinstance(video_id, str) and video_id:
        return {"video_id": video_id}
    return {}


@dataclass
class _QueueRuntime:
    name: str
    concurrency: int
    slots: threading.Semaphore
    executor: ThreadPoolExecutor
    thread: threading.Thread | None = None
    running: dict[str, Deadline] = field(default_factory=dict)


class WorkerPool:
    """Runs persisted jobs with one bounded worker group per queue.

    Each queue has its own dispatcher thread, slot semaphore and thread pool, so a
    saturated queue never delays another. A job attempt runs under a `Deadline` sized
    from its descriptor; handlers observe it cooperatively.
    """

    def __init__(
        self,
        *,
        registry: JobRegistry,
        jobs: JobsRepository,
        context: JobContext,
        queue_concurrency: Mapping[str, int] | None = None,
        retry_base_seconds: float = 5.0,
        retry_max_seconds: float = 600.0,
        poll_interval_seconds: float = 1.0,
        heartbeat_interval_seconds: float = 30.0,
        telemetry: TelemetryClient | None = None,
        on_discard: DiscardHook | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._registry = registry
        self._jobs = jobs
        self._context = context
        self._queue_concurrency = dict(queue_concurrency or {})
        self._retry_base_seconds = max(0.0, retry_base_seconds)
        self._retry_max_seconds = max(0.0, retry_max_seconds)
        self._poll_interval_seconds = max(0.01, poll_interval_seconds)
        self._heartbeat_interval_seconds = max(0.01, heartbeat_interval_seconds)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._on_discard = on_discard if on_discard is not None else self._report_discard
        self._clock = clock
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._queues: dict[str, _QueueRuntime] = {}
        self._heartbeat_thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return bool(self._queues) and not self._stop_event.is_set()

    def queue_names(self) -> list[str]:
        return sorted(set(self._registry.queues()) | set(self._queue_concurrency))

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        for queue in self.queue_names():
            concurrency = max(1, int(self._queue_concurrency.get(queue, 1)))
            runtime = _QueueRuntime(
                name=queue,
                concurrency=concurrency,
                slots=threading.Semaphore(concurrency),
                executor=ThreadPoolExecutor(
                    max_workers=concurrency,
                    thread_name_prefix=f"vod-archiver-{queue}",
                ),
            )
            runtime.thread = threading.Thread(
                target=self._dispatch_loop,
                args=(runtime,),
                name=f"vod-archiver-dispatch-{queue}",
                daemon=True,
            )
            self._queues[queue] = runtime
            runtime.thread.start()

        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            name="vod-archiver-heartbeat",
            daemon=True,
        )
        self._heartbeat_thread.start()
        LOGGER.info(
            "worker pool started queues=%s",
            ",".join(f"{runtime.name}:{runtime.concurrency}" for runtime in self._queues.values()),
        )

    def stop(self, *, cancel_running: bool = True, timeout_seconds: float = 10.0) -> None:
        self._stop_event.set()
        if cancel_running:
            with self._lock:
                for runtime in self._queues.values():
                    for deadline in runtime.running.values():
                        deadline.cancel()

        for runtime in self._queues.values():
            if runtime.thread is not None:
                runtime.thread.join(timeout=timeout_seconds)
            runtime.executor.shutdown(wait=True, cancel_futures=True)
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(timeout=timeout_seconds)
            self._heartbeat_thread = None
        self._queues.clear()
        LOGGER.info("worker pool stopped")

    def process_next(self, queue: str) -> JobInstance | None:
        """Claim and run one available job from `queue` on the calling thread."""
        job = self._jobs.claim_next(queue, now=self._clock())
        if job is None:
            return None
        self.execute(job)
        return self._jobs.get(job.job_id)

    def drain(self, queue: str, *, max_jobs: int = 1000) -> int:
        processed = 0
        while processed < max_jobs and self.process_next(queue) is not None:
            processed += 1
        return processed

    def execute(self, job: JobInstance) -> JobState:
        tokens = bind_contextvars(
            job_id=job.job_id,
            job_kind=job.kind,
            job_attempt=job.attempt,
            **_video_context(job),
        )
        try:
            try:
                descriptor = self._registry.get(job.kind)
            except UnknownJobKindError as exc:
                return self._fail(job, exc)

            deadline = Deadline.after(descriptor.timeout.total_seconds())
            runtime = self._queues.get(job.queue)
            if runtime is not None:
                with self._lock:
                    runtime.running[job.job_id] = deadline

            try:
                with self._telemetry.span(
                    "job.run",
                    job_id=job.job_id,
                    kind=job.kind,
                    queue=job.queue,
                    attempt=job.attempt,
                    **_video_context(job),
                ):
                    with bind_deadline(deadline):
                        descriptor.handler(self._context, job)
            except Exception as exc:
                return self._fail(job, exc)
            finally:
                if runtime is not None:
                    with self._lock:
                        runtime.running.pop(job.job_id, None)

            self._jobs.mark_succeeded(job.job_id)
            LOGGER.info("job succeeded kind=%s job_id=%s attempt=%s", job.kind, job.job_id, job.attempt)
            return JOB_STATE_SUCCEEDED
        finally:
            reset_contextvars(**tokens)

    def _fail(self, job: JobInstance, exc: BaseException) -> JobState:
        error = f"{type(exc).__name__}: {exc}"
        if is_retryable(exc) and job.attempt < job.max_attempts:
            delay = retry_backoff_seconds(
                job.attempt,
                base_seconds=self._retry_base_seconds,
                max_seconds=self._retry_max_seconds,
            )
            self._jobs.schedule_retry(
                job.job_id,
                error=error,
                available_at=self._clock() + timedelta(seconds=delay),
            )
            LOGGER.warning(
                "job failed; retry scheduled kind=%s job_id=%s attempt=%s/%s delay_seconds=%s args=%s",
                job.kind,
                job.job_id,
                job.attempt,
                job.max_attempts,
                delay,
                job.args,
                exc_info=exc,
            )
            self._telemetry.emit(
                "job.retry",
                job_id=job.job_id,
                kind=job.kind,
                attempt=job.attempt,
                delay_seconds=delay,
                error_type=type(exc).__name__,
            )
            return JOB_STATE_RETRYABLE

        self._jobs.mark_discarded(job.job_id, error=error)
        self._on_discard(job, exc)
        return JOB_STATE_DISCARDED

    def _report_discard(self, job: JobInstance, exc: BaseException) -> None:
        LOGGER.error(
            "job discarded kind=%s job_id=%s attempt=%s/%s retryable=%s args=%s",
            job.kind,
            job.job_id,
            job.attempt,
            job.max_attempts,
            is_retryable(exc),
            job.args,
            exc_info=exc,
        )
        self._telemetry.emit(
            "job.discarded",
            job_id=job.job_id,
            kind=job.kind,
            attempt=job.attempt,
            error_type=type(exc).__name__,
        )

    def _dispatch_loop(self, runtime: _QueueRuntime) -> None:
        while not self._stop_event.is_set():
            if not runtime.slots.acquire(timeout=self._poll_interval_seconds):
                continue
            try:
                job = self._jobs.claim_next(runtime.name, now=self._clock())
            except sqlite3.Error:
                runtime.slots.release()
                LOGGER.warning("job claim failed queue=%s", runtime.name, exc_info=True)
                self._stop_event.wait(self._poll_interval_seconds)
                continue

            if job is None:
                runtime.slots.release()
                self._stop_event.wait(self._poll_interval_seconds)
                continue

            try:
                runtime.executor.submit(self._run_in_slot, runtime, job)
            except RuntimeError:
                # Executor already shut down; the claimed job is recovered by the watchdog.
                runtime.slots.release()
                LOGGER.warning("job submit rejected during shutdown job_id=%s", job.job_id)
                return

    def _run_in_slot(self, runtime: _QueueRuntime, job: JobInstance) -> None:
        try:
            self.execute(job)
        except Exception:
            LOGGER.exception("job bookkeeping failed job_id=%s kind=%s", job.job_id, job.kind)
        finally:
            runtime.slots.release()

    def _heartbeat_loop(self) -> None:
        while not self._stop_event.wait(self._heartbeat_interval_seconds):
            with self._lock:
                job_ids = [job_id for runtime in self._queues.values() for job_id in runtime.running]
            if not job_ids:
                continue
            try:
                self._jobs.touch_heartbeats(job_ids, now=self._clock())
            except sqlite3.Error:
                LOGGER.warning("heartbeat refresh failed jobs=%s", len(job_ids), exc_info=True)
