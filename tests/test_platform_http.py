from __future__ import annotations

from datetime import timedelta

import pytest

from backend.archiver import deadline
from backend.archiver.deadline import Deadline, DeadlineExceeded
from backend.archiver.platforms.errors import MaxRetriesExceeded, UnexpectedStatus
from backend.archiver.platforms.executor import RequestExecutor
from backend.archiver.platforms.pagination import accumulate_pages
from backend.archiver.platforms.token_cache import TokenCache

from fakes import FakeTransport


def _executor(
    transport: FakeTransport,
    *,
    max_attempts: int = 3,
    cache: TokenCache | None = None,
) -> RequestExecutor:
    return RequestExecutor(
        platform="twitch",
        base_url="https://api.example/helix/",
        token_cache=cache or TokenCache(),
        transport=transport,
        default_headers={"Client-ID": "client-1"},
        max_attempts=max_attempts,
        retry_delay_seconds=0,
    )


def test_executor_returns_body_and_sends_auth_headers() -> None:
    cache = TokenCache()
    cache.set("twitch", "access-123")
    transport = FakeTransport()
    transport.queue(200, {"data": []})

    body = _executor(transport, cache=cache).execute("GET", "/videos", {"id": ["1", "2"], "first": "100"})

    assert body == b'{"data": []}'
    request = transport.requests[0]
    assert request.url == "https://api.example/helix/videos?id=1&id=2&first=100"
    assert request.headers["Authorization"] == "Bearer access-123"
    assert request.headers["Client-ID"] == "client-1"
    assert "Chrome" in request.headers["User-Agent"]


def test_executor_omits_authorization_without_token() -> None:
    transport = FakeTransport()
    transport.queue(200, {})

    _executor(transport).execute("GET", "users")

    assert "Authorization" not in transport.requests[0].headers


def test_executor_retries_rate_limit_until_max_attempts() -> None:
    transport = FakeTransport()
    for _ in range(3):
        transport.queue(429, {"message": "slow down"})

    with pytest.raises(MaxRetriesExceeded) as exc_info:
        _executor(transport, max_attempts=3).execute("GET", "streams")

    assert len(transport.requests) == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.retryable is True


def test_executor_recovers_after_rate_limit() -> None:
    transport = FakeTransport()
    transport.queue(429)
    transport.queue(200, {"ok": True})

    assert _executor(transport).execute("GET", "streams") == b'{"ok": true}'
    assert len(transport.requests) == 2


def test_executor_fails_fast_on_other_statuses() -> None:
    transport = FakeTransport()
    transport.queue(500, body=b"boom")

    with pytest.raises(UnexpectedStatus) as exc_info:
        _executor(transport).execute("GET", "streams")

    assert len(transport.requests) == 1
    assert exc_info.value.status_code == 500
    assert exc_info.value.body == "boom"


def test_executor_retry_wait_observes_deadline() -> None:
    transport = FakeTransport()
    for _ in range(3):
        transport.queue(429)
    executor = RequestExecutor(
        platform="kick",
        base_url="https://api.example",
        token_cache=TokenCache(),
        transport=transport,
        max_attempts=3,
        retry_delay_seconds=30,
    )
    expired = Deadline.after(timedelta(milliseconds=200).total_seconds())

    with deadline.bind_deadline(expired):
        with pytest.raises(DeadlineExceeded):
            executor.execute("GET", "livestreams")

    assert len(transport.requests) == 1


def test_accumulate_pages_follows_cursor_in_order() -> None:
    pages = {"": ([1, 2], "a"), "a": ([3], "b"), "b": ([4, 5], "")}
    seen: list[str] = []

    def fetch(cursor: str) -> tuple[list[int], str]:
        seen.append(cursor)
        return pages[cursor]

    assert accumulate_pages(fetch) == [1, 2, 3, 4, 5]
    assert seen == ["", "a", "b"]


def test_accumulate_pages_stops_at_limit() -> None:
    calls = 0

    def fetch(cursor: str) -> tuple[list[int], str]:
        nonlocal calls
        calls += 1
        start = int(cursor or 0)
        return [start, start + 1, start + 2], str(start + 3)

    assert accumulate_pages(fetch, limit=4) == [0, 1, 2, 3]
    assert calls == 2


def test_accumulate_pages_single_empty_page() -> None:
    assert accumulate_pages(lambda cursor: ([], "")) == []


def test_deadline_sleep_returns_early_when_cancelled() -> None:
    running = Deadline.after(60)
    running.cancel()

    with deadline.bind_deadline(running):
        with pytest.raises(DeadlineExceeded):
            deadline.sleep(30)


def test_bounded_timeout_without_deadline_uses_default() -> None:
    assert deadline.current_deadline() is None
    assert deadline.bounded_timeout(12.5) == 12.5
