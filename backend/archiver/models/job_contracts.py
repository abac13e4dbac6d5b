from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from backend.archiver.services.job_context import JobContext

JobState = Literal["pending", "running", "succeeded", "retryable", "discarded"]

JOB_STATE_PENDING: JobState = "pending"
JOB_STATE_RUNNING: JobState = "running"
JOB_STATE_SUCCEEDED: JobState = "succeeded"
JOB_STATE_RETRYABLE: JobState = "retryable"
JOB_STATE_DISCARDED: JobState = "discarded"
JOB_STATES: tuple[JobState, ...] = (
    JOB_STATE_PENDING,
    JOB_STATE_RUNNING,
    JOB_STATE_SUCCEEDED,
    JOB_STATE_RETRYABLE,
    JOB_STATE_DISCARDED,
)

QUEUE_DEFAULT = "default"
QUEUE_VIDEO_DOWNLOAD = "video-download"
QUEUE_VIDEO_POSTPROCESS = "video-postprocess"
QUEUE_CHAT_DOWNLOAD = "chat-download"
QUEUE_CHAT_RENDER = "chat-render"


@dataclass(frozen=True)
class JobInstance:
    job_id: str
    kind: str
    queue: str
    args: dict[str, Any]
    state: JobState
    attempt: int
    max_attempts: int
    available_at: datetime
    last_error: str | None = None
    heartbeat_at: datetime | None = None

    @property
    def attempts_remaining(self) -> bool:
        return self.attempt < self.max_attempts


JobHandler = Callable[["JobContext", JobInstance], None]


@dataclass(frozen=True)
class JobDescriptor:
    """Static policy for one job kind: where it runs, how often it may run, and for how long."""

    kind: str
    handler: JobHandler = field(compare=False)
    queue: str = QUEUE_DEFAULT
    max_attempts: int = 5
    timeout: timedelta = timedelta(minutes=1)

    def __post_init__(self) -> None:
        if not self.kind.strip():
            raise ValueError("job kind must not be empty")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 for {self.kind}")
        if self.timeout <= timedelta(0):
            raise ValueError(f"timeout must be positive for {self.kind}")


@dataclass(frozen=True)
class PeriodicJobRule:
    kind: str
    interval: timedelta
    args_factory: Callable[[], dict[str, Any]] = field(default=dict, compare=False)
    run_on_start: bool = False
