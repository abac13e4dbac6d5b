from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from backend.archiver.models.platform_contracts import ChatPage
from backend.archiver.platforms.chat_export import (
    WindowedChatExporter,
    decode_cursor,
    format_cursor,
)
from backend.archiver.platforms.errors import DecodeFailed, UnexpectedStatus

START = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)
END = START + timedelta(hours=1)


def _message(message_id: str, at: datetime) -> dict[str, object]:
    return {"id": message_id, "content": f"hello {message_id}", "created_at": at.isoformat()}


def _cursor_at(moment: datetime) -> str:
    return str(int(moment.timestamp() * 1_000_000))


def _export(pages: list[ChatPage], output_path: Path) -> tuple[int, list[str]]:
    requested: list[str] = []
    remaining = list(pages)

    def fetch(cursor: str) -> ChatPage:
        requested.append(cursor)
        return remaining.pop(0)

    exporter = WindowedChatExporter(fetch, page_delay_seconds=0)
    count = exporter.export(start_time=START, end_time=END, output_path=output_path)
    return count, requested


def test_format_cursor_uses_millisecond_utc() -> None:
    moment = datetime(2024, 5, 1, 10, 0, 1, 234567, tzinfo=UTC)
    assert format_cursor(moment) == "2024-05-01T10:00:01.234Z"


def test_decode_cursor_reads_epoch_microseconds() -> None:
    assert decode_cursor(_cursor_at(START)) == START


def test_decode_cursor_rejects_garbage() -> None:
    with pytest.raises(DecodeFailed):
        decode_cursor("not-a-number")


def test_export_writes_every_page_in_order(tmp_path: Path) -> None:
    output = tmp_path / "chat.json"
    pages = [
        ChatPage(
            messages=[_message("a", START), _message("b", START + timedelta(minutes=1))],
            cursor=_cursor_at(START + timedelta(minutes=5)),
        ),
        ChatPage(messages=[_message("c", START + timedelta(minutes=6))], cursor=""),
    ]

    count, requested = _export(pages, output)

    assert count == 3
    assert requested == ["2024-05-01T10:00:00.000Z", "2024-05-01T10:05:00.000Z"]
    assert [item["id"] for item in json.loads(output.read_text(encoding="utf-8"))] == ["a", "b", "c"]


def test_export_without_messages_writes_empty_array(tmp_path: Path) -> None:
    output = tmp_path / "chat.json"

    count, _ = _export([ChatPage(messages=[], cursor="")], output)

    assert count == 0
    assert json.loads(output.read_text(encoding="utf-8")) == []


def test_export_stops_at_first_message_past_window(tmp_path: Path) -> None:
    output = tmp_path / "chat.json"
    pages = [
        ChatPage(
            messages=[_message("in", END - timedelta(seconds=1)), _message("out", END + timedelta(seconds=1))],
            cursor=_cursor_at(END + timedelta(minutes=1)),
        ),
        ChatPage(messages=[_message("never", END + timedelta(minutes=2))], cursor=""),
    ]

    count, requested = _export(pages, output)

    assert count == 1
    assert len(requested) == 1
    assert json.loads(output.read_text(encoding="utf-8"))[0]["id"] == "in"


def test_export_skips_empty_pages_until_cursor_passes_window(tmp_path: Path) -> None:
    output = tmp_path / "chat.json"
    pages = [
        ChatPage(messages=[], cursor=_cursor_at(START + timedelta(minutes=30))),
        ChatPage(messages=[], cursor=_cursor_at(END + timedelta(minutes=30))),
    ]

    count, requested = _export(pages, output)

    assert count == 0
    assert requested == ["2024-05-01T10:00:00.000Z", "2024-05-01T10:30:00.000Z"]
    assert json.loads(output.read_text(encoding="utf-8")) == []


def test_export_closes_array_when_fetch_fails(tmp_path: Path) -> None:
    output = tmp_path / "chat.json"
    calls = 0

    def fetch(cursor: str) -> ChatPage:
        nonlocal calls
        calls += 1
        if calls == 1:
            return ChatPage(messages=[_message("a", START)], cursor=_cursor_at(START + timedelta(minutes=1)))
        raise UnexpectedStatus(status_code=502, body="bad gateway")

    exporter = WindowedChatExporter(fetch, page_delay_seconds=0)
    with pytest.raises(UnexpectedStatus):
        exporter.export(start_time=START, end_time=END, output_path=output)

    assert json.loads(output.read_text(encoding="utf-8")) == [
        {"id": "a", "content": "hello a", "created_at": START.isoformat()}
    ]
