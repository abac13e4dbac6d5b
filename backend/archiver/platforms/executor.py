from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from backend.archiver import deadline
from backend.archiver.platforms.errors import (
    MaxRetriesExceeded,
    PlatformNetworkError,
    UnexpectedStatus,
)
from backend.archiver.platforms.token_cache import TokenCache

LOGGER = logging.getLogger("vod_archiver.platforms.executor")

CHROME_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
RATE_LIMIT_WARNING_PERCENT = 75.0

QueryParams = Mapping[str, str | Sequence[str]]


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


class HttpTransport(Protocol):
    def send(
        self,
        *,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | None,
        timeout: float,
    ) -> HttpResponse:
        ...


class UrllibTransport:
    """Sends requests with urllib and turns HTTP error statuses into plain responses."""

    def send(
        self,
        *,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | None,
        timeout: float,
    ) -> HttpResponse:
        request = Request(url=url, data=body, headers=dict(headers), method=method)
        try:
            with urlopen(request, timeout=timeout) as response:
                return HttpResponse(
                    status=int(response.status),
                    body=response.read(),
                    headers=_lower_headers(response.headers.items()),
                )
        except HTTPError as exc:
            error_body = exc.read() if exc.fp else b""
            error_headers = exc.headers.items() if exc.headers is not None else []
            return HttpResponse(
                status=exc.code,
                body=error_body,
                headers=_lower_headers(error_headers),
            )
        except URLError as exc:
            raise PlatformNetworkError(f"request to {url} failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise PlatformNetworkError(f"request to {url} timed out") from exc


class RequestExecutor:
    """Issues one authenticated platform API call with bounded retry on HTTP 429.

    Every retry waits `retry_delay_seconds * 2**(attempt-1)` (capped) before the next
    attempt. Any other non-2xx status fails immediately.
    """

    def __init__(
        self,
        *,
        platform: str,
        base_url: str,
        token_cache: TokenCache,
        transport: HttpTransport | None = None,
        default_headers: Mapping[str, str] | None = None,
        user_agent: str = CHROME_USER_AGENT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        retry_max_delay_seconds: float = 60.0,
        http_timeout_seconds: float = 30.0,
    ) -> None:
        self._platform = platform
        self._base_url = base_url.rstrip("/")
        self._token_cache = token_cache
        self._transport: HttpTransport = transport if transport is not None else UrllibTransport()
        self._default_headers = dict(default_headers or {})
        self._user_agent = user_agent
        self._max_attempts = max(1, int(max_attempts))
        self._retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self._retry_max_delay_seconds = max(self._retry_delay_seconds, float(retry_max_delay_seconds))
        self._http_timeout_seconds = max(1.0, float(http_timeout_seconds))

    @property
    def platform(self) -> str:
        return self._platform

    @property
    def transport(self) -> HttpTransport:
        return self._transport

    def execute(
        self,
        method: str,
        path: str,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        *,
        base_url: str | None = None,
    ) -> bytes:
        url = _build_url(base_url or self._base_url, path, params)

        for attempt in range(1, self._max_attempts + 1):
            request_headers = self._request_headers(headers)
            response = self._transport.send(
                method=method,
                url=url,
                headers=request_headers,
                body=None,
                timeout=deadline.bounded_timeout(self._http_timeout_seconds),
            )
            _warn_on_rate_limit_usage(self._platform, response)

            if response.status == 429:
                LOGGER.info(
                    "rate limited platform=%s path=%s attempt=%s/%s",
                    self._platform,
                    path,
                    attempt,
                    self._max_attempts,
                )
                if attempt < self._max_attempts:
                    deadline.sleep(self._retry_delay_for(attempt))
                continue

            if not 200 <= response.status < 300:
                raise UnexpectedStatus(status_code=response.status, body=response.body)

            return response.body

        raise MaxRetriesExceeded(
            f"max retry attempts reached for {self._platform} {path}",
            attempts=self._max_attempts,
        )

    def _request_headers(self, headers: Mapping[str, str] | None) -> dict[str, str]:
        request_headers: dict[str, str] = {"Accept": "application/json"}
        request_headers.update(self._default_headers)
        if headers:
            request_headers.update(headers)
        request_headers["User-Agent"] = self._user_agent
        token = self._token_cache.get(self._platform)
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        return request_headers

    def _retry_delay_for(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        return min(self._retry_max_delay_seconds, self._retry_delay_seconds * (2**exponent))


def _build_url(base_url: str, path: str, params: QueryParams | None) -> str:
    url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    if not params:
        return url
    query = urlencode(_flatten_params(params))
    return f"{url}?{query}" if query else url


def _flatten_params(params: QueryParams) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        if isinstance(value, str):
            pairs.append((key, value))
            continue
        for item in value:
            pairs.append((key, item))
    return pairs


def _lower_headers(items: Iterable[tuple[str, str]]) -> dict[str, str]:
    return {str(key).lower(): str(value) for key, value in items}


def _warn_on_rate_limit_usage(platform: str, response: HttpResponse) -> None:
    limit = _to_optional_int(response.header("Ratelimit-Limit"))
    remaining = _to_optional_int(response.header("Ratelimit-Remaining"))
    if limit is None or remaining is None or limit <= 0 or remaining <= 0:
        return

    usage_percent = (limit - remaining) / limit * 100
    if usage_percent <= RATE_LIMIT_WARNING_PERCENT:
        return

    reset_at = _to_optional_int(response.header("Ratelimit-Reset"))
    reset_text = (
        datetime.fromtimestamp(reset_at, tz=UTC).isoformat() if reset_at is not None else "unknown"
    )
    LOGGER.warning(
        "rate limit usage is over %s%% platform=%s remaining=%s/%s resets_at=%s",
        int(RATE_LIMIT_WARNING_PERCENT),
        platform,
        remaining,
        limit,
        reset_text,
    )


def _to_optional_int(value: object) -> int | None:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None
