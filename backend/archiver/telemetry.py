"""Structured telemetry events for jobs, the scheduler and HTTP requests.

Attributes are flattened to JSON scalars before they reach a sink. Credentials and
chat text are redacted, archive paths are reduced to their file name, and long
strings are truncated.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping, Sized
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import PurePath
from typing import Any, Literal, Protocol

import structlog

TELEMETRY_LOGGER_NAME = "vod_archiver.telemetry"
REDACTED = "[redacted]"

Scalar = bool | int | float | str | None

# Substrings of attribute names that may carry platform credentials or chat text.
_REDACTED_KEY_PARTS: tuple[str, ...] = (
    "access_token",
    "refresh_token",
    "client_secret",
    "stream_key",
    "authorization",
    "cookie",
    "password",
    "content",
    "message",
)
_MAX_TEXT = 160


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        _ = (event_name, attributes)


class LogTelemetrySink:
    """Writes each event as one structlog record on the telemetry logger."""

    def __init__(self, logger_name: str = TELEMETRY_LOGGER_NAME) -> None:
        self._logger = structlog.get_logger(logger_name)

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if self.enabled:
            self.sink.emit(event_name=event_name, attributes=sanitize_attributes(attributes))

    @contextmanager
    def span(self, event_prefix: str, **attributes: Any) -> Iterator[dict[str, Any]]:
        """Time a block as `<prefix>.start` followed by `.finish` or `.error`.

        Values put into the yielded dict are added to the finish event. Error events
        carry the exception type and whether the worker pool would retry it.
        """
        started = time.perf_counter()
        outcome: dict[str, Any] = {}
        self.emit(f"{event_prefix}.start", **attributes)
        try:
            yield outcome
        except Exception as exc:
            self.emit(
                f"{event_prefix}.error",
                **attributes,
                duration_ms=_since_ms(started),
                error_type=type(exc).__name__,
                retryable=bool(getattr(exc, "retryable", True)),
            )
            raise
        self.emit(f"{event_prefix}.finish", **{**attributes, **outcome}, duration_ms=_since_ms(started))


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if enabled and sink == "log":
        return TelemetryClient(enabled=True, sink=LogTelemetrySink())
    if enabled and sink != "none":
        logging.getLogger(TELEMETRY_LOGGER_NAME).warning(
            "unsupported telemetry sink requested; disabling telemetry sink=%s",
            sink,
        )
    return TelemetryClient.disabled()


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, Scalar]:
    sanitized: dict[str, Scalar] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(part in key for part in _REDACTED_KEY_PARTS):
            sanitized[key] = REDACTED
        elif key.endswith("_path") and isinstance(raw_value, str | PurePath):
            sanitized[key] = _text(PurePath(raw_value).name)
        else:
            sanitized[key] = _scalar(raw_value)
    return sanitized


def _scalar(value: Any) -> Scalar:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        return _text(value)
    if isinstance(value, PurePath):
        return _text(value.name)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, Sized):
        return len(value)
    return type(value).__name__


def _text(value: str) -> str:
    compact = " ".join(value.split())
    if len(compact) > _MAX_TEXT:
        return f"{compact[:_MAX_TEXT]}..."
    return compact


def _since_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
