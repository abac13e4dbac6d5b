from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.archiver.models.job_contracts import PeriodicJobRule
from backend.archiver.repositories.jobs_repository import JobsRepository
from backend.archiver.services.job_registry import JobRegistry
from backend.archiver.telemetry import TelemetryClient

LOGGER = logging.getLogger("vod_archiver.scheduler")


class PeriodicScheduler:
    """Enqueues recurring jobs from a daemon thread.

    Every rule keeps its own monotonic deadline. Rules marked `run_on_start` fire on the
    first tick; the rest fire one interval after `start()`.
    """

    def __init__(
        self,
        *,
        registry: JobRegistry,
        jobs: JobsRepository,
        rules: Sequence[PeriodicJobRule],
        telemetry: TelemetryClient | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        for rule in rules:
            # Fail at startup rather than on the first tick.
            registry.get(rule.kind)
        self._registry = registry
        self._jobs = jobs
        self._rules = tuple(rules)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._monotonic = monotonic
        self._next_due: list[float] = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def rules(self) -> tuple[PeriodicJobRule, ...]:
        return self._rules

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self.arm()
        self._thread = threading.Thread(target=self._run_loop, name="vod-archiver-scheduler")
        self._thread.daemon = True
        self._thread.start()
        LOGGER.info("periodic scheduler started rules=%s", len(self._rules))

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None

    def arm(self) -> None:
        now = self._monotonic()
        self._next_due = [
            now if rule.run_on_start else now + rule.interval.total_seconds() for rule in self._rules
        ]

    def run_pending(self) -> list[str]:
        """Enqueue every rule that is due and return the kinds that were enqueued."""
        if len(self._next_due) != len(self._rules):
            self.arm()
        now = self._monotonic()
        enqueued: list[str] = []
        for index, rule in enumerate(self._rules):
            if now < self._next_due[index]:
                continue
            self._next_due[index] = now + rule.interval.total_seconds()
            if self._enqueue(rule):
                enqueued.append(rule.kind)
        return enqueued

    def seconds_until_next(self) -> float:
        if not self._next_due:
            return 60.0
        return max(0.0, min(self._next_due) - self._monotonic())

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            self._stop_event.wait(min(60.0, self.seconds_until_next()))

    def _enqueue(self, rule: PeriodicJobRule) -> bool:
        tick_id = uuid4().hex
        tokens = bind_contextvars(scheduler_tick_id=tick_id, scheduler_rule=rule.kind)
        try:
            job_id = self._registry.enqueue(self._jobs, rule.kind, rule.args_factory())
        except Exception:
            LOGGER.warning("periodic enqueue failed kind=%s", rule.kind, exc_info=True)
            self._telemetry.emit("scheduler.enqueue.error", kind=rule.kind, tick_id=tick_id)
            return False
        finally:
            reset_contextvars(**tokens)

        LOGGER.debug("periodic job enqueued kind=%s job_id=%s", rule.kind, job_id)
        self._telemetry.emit("scheduler.enqueue", kind=rule.kind, job_id=job_id, tick_id=tick_id)
        return True
