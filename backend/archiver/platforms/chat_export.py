from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from backend.archiver import deadline
from backend.archiver.models.platform_contracts import ChatPage
from backend.archiver.platforms.errors import ChatExportIOError, DecodeFailed

LOGGER = logging.getLogger("vod_archiver.platforms.chat_export")

DEFAULT_PAGE_DELAY_SECONDS = 0.1
SEQUENCE_OPEN = "[\n"
SEQUENCE_SEPARATOR = ",\n"
SEQUENCE_CLOSE = "\n]"

ChatPageFetcher = Callable[[str], ChatPage]
TimestampReader = Callable[[dict[str, object]], datetime]


def format_cursor(moment: datetime) -> str:
    """Millisecond ISO-8601 cursor in UTC, e.g. `2024-05-01T10:00:00.000Z`."""
    value = _as_utc(moment)
    return f"{value.strftime('%Y-%m-%dT%H:%M:%S')}.{value.microsecond // 1000:03d}Z"


def decode_cursor(cursor: str) -> datetime:
    """Platform page cursors are microseconds since the Unix epoch."""
    try:
        microseconds = int(cursor.strip())
    except ValueError as exc:
        raise DecodeFailed(f"failed to parse chat cursor: {cursor!r}") from exc
    return datetime.fromtimestamp(microseconds / 1_000_000, tz=UTC)


def read_created_at(message: dict[str, object]) -> datetime:
    raw = message.get("created_at")
    if not isinstance(raw, str) or not raw.strip():
        raise DecodeFailed("chat message missing created_at")
    try:
        return _as_utc(datetime.fromisoformat(raw.strip().replace("Z", "+00:00")))
    except ValueError as exc:
        raise DecodeFailed(f"invalid chat message created_at: {raw!r}") from exc


class _SequenceWriter:
    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._opened = False
        self._closed = False
        self.count = 0

    def open(self) -> None:
        self._write(SEQUENCE_OPEN)
        self._opened = True

    def append(self, message: dict[str, object]) -> None:
        if self.count > 0:
            self._write(SEQUENCE_SEPARATOR)
        self._write(json.dumps(message, ensure_ascii=False, separators=(",", ":")))
        self.count += 1

    def close(self) -> None:
        if not self._opened or self._closed:
            return
        self._closed = True
        self._write(SEQUENCE_CLOSE)

    def _write(self, text: str) -> None:
        try:
            self._stream.write(text)
        except OSError as exc:
            raise ChatExportIOError(f"failed to write chat export: {exc}") from exc


class WindowedChatExporter:
    """Streams a bounded window of chat history to a JSON array file page by page.

    The output is always a well-formed array: it is opened once up front and closed
    exactly once on every exit path, including errors raised while fetching.
    """

    def __init__(
        self,
        fetch_page: ChatPageFetcher,
        *,
        page_delay_seconds: float = DEFAULT_PAGE_DELAY_SECONDS,
        timestamp_of: TimestampReader = read_created_at,
    ) -> None:
        self._fetch_page = fetch_page
        self._page_delay_seconds = max(0.0, page_delay_seconds)
        self._timestamp_of = timestamp_of

    def export(self, *, start_time: datetime, end_time: datetime, output_path: Path) -> int:
        end = _as_utc(end_time)
        try:
            handle = output_path.open("w", encoding="utf-8")
        except OSError as exc:
            raise ChatExportIOError(f"failed to create output file {output_path}: {exc}") from exc

        with handle:
            writer = _SequenceWriter(handle)
            writer.open()
            try:
                self._export_pages(writer, cursor=format_cursor(start_time), end=end)
            finally:
                writer.close()

        LOGGER.info("chat export finished path=%s messages=%s", output_path, writer.count)
        return writer.count

    def _export_pages(self, writer: _SequenceWriter, *, cursor: str, end: datetime) -> None:
        while True:
            page = self._fetch_page(cursor)

            if not page.messages:
                if not page.cursor:
                    return
                cursor_time = decode_cursor(page.cursor)
                if cursor_time > end:
                    return
                cursor = format_cursor(cursor_time)
                deadline.sleep(self._page_delay_seconds)
                continue

            for message in page.messages:
                if self._timestamp_of(message) > end:
                    return
                writer.append(message)

            if not page.cursor:
                return
            cursor_time = decode_cursor(page.cursor)
            if cursor_time > end:
                return
            cursor = format_cursor(cursor_time)
            deadline.sleep(self._page_delay_seconds)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
