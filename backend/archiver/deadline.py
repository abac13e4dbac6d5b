from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field


class DeadlineExceeded(TimeoutError):
    retryable = True


@dataclass
class Deadline:
    """Cooperative execution deadline for a single job attempt.

    Blocking work started under a deadline bounds itself with `bounded_timeout()` and
    sleeps through `sleep()`, so expiring the deadline (or calling `cancel()`) makes
    in-flight calls give up instead of running to completion.
    """

    expires_at: float
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(expires_at=time.monotonic() + max(0.0, seconds))

    def remaining(self) -> float:
        if self.cancel_event.is_set():
            return 0.0
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def cancel(self) -> None:
        self.cancel_event.set()

    def check(self) -> None:
        if self.expired():
            raise DeadlineExceeded("job deadline exceeded")


_CURRENT_DEADLINE: ContextVar[Deadline | None] = ContextVar("current_deadline", default=None)


def current_deadline() -> Deadline | None:
    return _CURRENT_DEADLINE.get()


@contextmanager
def bind_deadline(deadline: Deadline) -> Iterator[Deadline]:
    token = _CURRENT_DEADLINE.set(deadline)
    try:
        yield deadline
    finally:
        _CURRENT_DEADLINE.reset(token)


def check_deadline() -> None:
    deadline = current_deadline()
    if deadline is not None:
        deadline.check()


def bounded_timeout(default_seconds: float) -> float:
    deadline = current_deadline()
    if deadline is None:
        return default_seconds
    deadline.check()
    return max(0.001, min(default_seconds, deadline.remaining()))


def sleep(seconds: float) -> None:
    if seconds <= 0:
        check_deadline()
        return
    deadline = current_deadline()
    if deadline is None:
        time.sleep(seconds)
        return
    deadline.check()
    deadline.cancel_event.wait(min(seconds, deadline.remaining()))
    deadline.check()
