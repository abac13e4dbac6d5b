from __future__ import annotations

import json
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, cast
from uuid import uuid4

from backend.archiver.models.platform_contracts import Category, Chapter
from backend.archiver.repositories.common import parse_iso_datetime, parse_optional_iso, to_iso, utc_now_iso
from backend.archiver.repositories.database import Database

VideoStatus = Literal["pending", "processing", "archived", "failed"]

VIDEO_PATH_COLUMNS = frozenset(
    {
        "folder_path",
        "info_path",
        "thumbnail_path",
        "video_path",
        "chat_path",
        "chat_video_path",
    }
)
_CHANNEL_COLUMNS = (
    "id, platform, ext_id, name, display_name, image_path, watch_live, watch_vods, download_chat, "
    "video_types_json, title_regex, max_video_age_days, categories_json, apply_categories_to_live, "
    "last_checked_at"
)
_VIDEO_COLUMNS = (
    "id, channel_id, platform, ext_id, ext_stream_id, video_type, title, duration, views, status, "
    "folder_path, info_path, thumbnail_path, video_path, chat_path, chat_video_path, streamed_at, "
    "created_at"
)


@dataclass(frozen=True)
class ChannelRecord:
    channel_id: str
    platform: str
    ext_id: str
    name: str
    display_name: str
    image_path: str | None
    watch_live: bool
    watch_vods: bool
    download_chat: bool
    video_types: tuple[str, ...]
    title_regex: str | None
    max_video_age_days: int
    categories: tuple[str, ...]
    apply_categories_to_live: bool
    last_checked_at: datetime | None


@dataclass(frozen=True)
class VideoRecord:
    video_id: str
    channel_id: str
    platform: str
    ext_id: str | None
    ext_stream_id: str | None
    video_type: str
    title: str
    duration: int
    views: int
    status: VideoStatus
    folder_path: str | None
    info_path: str | None
    thumbnail_path: str | None
    video_path: str | None
    chat_path: str | None
    chat_video_path: str | None
    streamed_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class MutedSegmentRecord:
    start: int
    end: int


class ArchiveStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert_channel(
        self,
        *,
        platform: str,
        ext_id: str,
        name: str,
        display_name: str,
        watch_live: bool = False,
        watch_vods: bool = False,
        download_chat: bool = True,
        video_types: Sequence[str] = ("archive",),
        title_regex: str | None = None,
        max_video_age_days: int = 0,
        categories: Sequence[str] = (),
        apply_categories_to_live: bool = False,
    ) -> ChannelRecord:
        now = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO channels
                (id, platform, ext_id, name, display_name, watch_live, watch_vods, download_chat,
                 video_types_json, title_regex, max_video_age_days, categories_json,
                 apply_categories_to_live, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(platform, name) DO UPDATE SET
                    ext_id = excluded.ext_id,
                    display_name = excluded.display_name,
                    watch_live = excluded.watch_live,
                    watch_vods = excluded.watch_vods,
                    download_chat = excluded.download_chat,
                    video_types_json = excluded.video_types_json,
                    title_regex = excluded.title_regex,
                    max_video_age_days = excluded.max_video_age_days,
                    categories_json = excluded.categories_json,
                    apply_categories_to_live = excluded.apply_categories_to_live,
                    updated_at = excluded.updated_at
                """,
                (
                    f"chn_{uuid4().hex}",
                    platform,
                    ext_id,
                    name,
                    display_name,
                    int(watch_live),
                    int(watch_vods),
                    int(download_chat),
                    json.dumps(list(video_types)),
                    title_regex,
                    max_video_age_days,
                    json.dumps(list(categories)),
                    int(apply_categories_to_live),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                f"SELECT {_CHANNEL_COLUMNS} FROM channels WHERE platform = ? AND name = ?",
                (platform, name),
            ).fetchone()
        return _row_to_channel(row)

    def get_channel(self, channel_id: str) -> ChannelRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_CHANNEL_COLUMNS} FROM channels WHERE id = ?",
                (channel_id,),
            ).fetchone()
        return _row_to_channel(row) if row is not None else None

    def list_channels(self, platform: str | None = None) -> list[ChannelRecord]:
        with self._db.connection() as conn:
            if platform is None:
                rows = conn.execute(f"SELECT {_CHANNEL_COLUMNS} FROM channels ORDER BY name").fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_CHANNEL_COLUMNS} FROM channels WHERE platform = ? ORDER BY name",
                    (platform,),
                ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def list_live_watched_channels(self, platform: str) -> list[ChannelRecord]:
        return [channel for channel in self.list_channels(platform) if channel.watch_live]

    def list_vod_watched_channels(self, platform: str) -> list[ChannelRecord]:
        return [channel for channel in self.list_channels(platform) if channel.watch_vods]

    def mark_channel_checked(self, channel_id: str, checked_at: datetime) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE channels SET last_checked_at = ? WHERE id = ?",
                (to_iso(checked_at), channel_id),
            )

    def create_video(
        self,
        *,
        channel_id: str,
        platform: str,
        ext_id: str | None,
        ext_stream_id: str | None,
        video_type: str,
        title: str,
        streamed_at: datetime,
        duration: int = 0,
        views: int = 0,
        status: VideoStatus = "pending",
    ) -> VideoRecord:
        video_id = f"vid_{uuid4().hex}"
        now = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO videos
                (id, channel_id, platform, ext_id, ext_stream_id, video_type, title, duration, views,
                 status, streamed_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    video_id,
                    channel_id,
                    platform,
                    ext_id,
                    ext_stream_id,
                    video_type,
                    title,
                    duration,
                    views,
                    status,
                    to_iso(streamed_at),
                    now,
                    now,
                ),
            )
        created = self.get_video(video_id)
        assert created is not None
        return created

    def get_video(self, video_id: str) -> VideoRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE id = ?",
                (video_id,),
            ).fetchone()
        return _row_to_video(row) if row is not None else None

    def find_video_by_ext_id(self, platform: str, ext_id: str) -> VideoRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE platform = ? AND ext_id = ? LIMIT 1",
                (platform, ext_id),
            ).fetchone()
        return _row_to_video(row) if row is not None else None

    def find_live_video_by_stream_id(self, channel_id: str, ext_stream_id: str) -> VideoRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_VIDEO_COLUMNS}
                FROM videos
                WHERE channel_id = ? AND video_type = 'live' AND ext_stream_id = ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (channel_id, ext_stream_id),
            ).fetchone()
        return _row_to_video(row) if row is not None else None

    def list_videos_for_backfill(self, platform: str) -> list[VideoRecord]:
        """Archived platform videos that can carry chapters and muted segments."""
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_VIDEO_COLUMNS}
                FROM videos
                WHERE platform = ?
                  AND video_type NOT IN ('live', 'clip')
                  AND ext_id IS NOT NULL AND ext_id != ''
                ORDER BY streamed_at ASC
                """,
                (platform,),
            ).fetchall()
        return [_row_to_video(row) for row in rows]

    def list_live_videos_with_stream_id(self, channel_id: str) -> list[VideoRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_VIDEO_COLUMNS}
                FROM videos
                WHERE channel_id = ?
                  AND video_type = 'live'
                  AND ext_stream_id IS NOT NULL AND ext_stream_id != ''
                ORDER BY streamed_at ASC
                """,
                (channel_id,),
            ).fetchall()
        return [_row_to_video(row) for row in rows]

    def set_video_ext_id(self, video_id: str, ext_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE videos SET ext_id = ?, updated_at = ? WHERE id = ?",
                (ext_id, utc_now_iso(), video_id),
            )

    def set_video_status(self, video_id: str, status: VideoStatus) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE videos SET status = ?, updated_at = ? WHERE id = ?",
                (status, utc_now_iso(), video_id),
            )

    def set_video_paths(self, video_id: str, **paths: str) -> None:
        unknown = set(paths) - VIDEO_PATH_COLUMNS
        if unknown:
            raise ValueError(f"unknown video path columns: {sorted(unknown)}")
        if not paths:
            return
        assignments = ", ".join(f"{column} = ?" for column in paths)
        with self._db.connection() as conn:
            conn.execute(
                f"UPDATE videos SET {assignments}, updated_at = ? WHERE id = ?",
                (*paths.values(), utc_now_iso(), video_id),
            )

    def list_chapters(self, video_id: str) -> list[Chapter]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT ext_id, chapter_type, title, start_seconds, end_seconds
                FROM chapters
                WHERE video_id = ?
                ORDER BY start_seconds ASC
                """,
                (video_id,),
            ).fetchall()
        return [
            Chapter(
                chapter_id=str(row["ext_id"]),
                chapter_type=str(row["chapter_type"]),
                title=str(row["title"]),
                start=int(row["start_seconds"]),
                end=int(row["end_seconds"]),
            )
            for row in rows
        ]

    def add_chapters(self, video_id: str, chapters: Sequence[Chapter]) -> int:
        with self._db.connection() as conn:
            conn.executemany(
                """
                INSERT INTO chapters
                (id, video_id, ext_id, chapter_type, title, start_seconds, end_seconds)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        f"chp_{uuid4().hex}",
                        video_id,
                        chapter.chapter_id,
                        chapter.chapter_type,
                        chapter.title,
                        chapter.start,
                        chapter.end,
                    )
                    for chapter in chapters
                ],
            )
        return len(chapters)

    def set_chapter_end(self, video_id: str, chapter_id: str, end: int) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE chapters SET end_seconds = ? WHERE video_id = ? AND ext_id = ?",
                (end, video_id, chapter_id),
            )

    def list_muted_segments(self, video_id: str) -> list[MutedSegmentRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT start_seconds, end_seconds
                FROM muted_segments
                WHERE video_id = ?
                ORDER BY start_seconds ASC
                """,
                (video_id,),
            ).fetchall()
        return [
            MutedSegmentRecord(start=int(row["start_seconds"]), end=int(row["end_seconds"]))
            for row in rows
        ]

    def add_muted_segments(self, video_id: str, segments: Sequence[MutedSegmentRecord]) -> int:
        with self._db.connection() as conn:
            conn.executemany(
                """
                INSERT INTO muted_segments (id, video_id, start_seconds, end_seconds)
                VALUES (?, ?, ?, ?)
                """,
                [(f"mut_{uuid4().hex}", video_id, segment.start, segment.end) for segment in segments],
            )
        return len(segments)

    def upsert_categories(self, platform: str, categories: Sequence[Category]) -> int:
        now = utc_now_iso()
        with self._db.connection() as conn:
            conn.executemany(
                """
                INSERT INTO categories (id, platform, name, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name, updated_at = excluded.updated_at
                """,
                [(category.category_id, platform, category.name, now) for category in categories],
            )
        return len(categories)

    def count_categories(self, platform: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM categories WHERE platform = ?",
                (platform,),
            ).fetchone()
        return int(row["total"])

    def block_video(self, ext_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO blocked_videos (ext_id, created_at) VALUES (?, ?)",
                (ext_id, utc_now_iso()),
            )

    def is_video_blocked(self, ext_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM blocked_videos WHERE ext_id = ?",
                (ext_id,),
            ).fetchone()
        return row is not None


def _row_to_channel(row: sqlite3.Row) -> ChannelRecord:
    return ChannelRecord(
        channel_id=str(row["id"]),
        platform=str(row["platform"]),
        ext_id=str(row["ext_id"]),
        name=str(row["name"]),
        display_name=str(row["display_name"]),
        image_path=_text_or_none(row["image_path"]),
        watch_live=bool(row["watch_live"]),
        watch_vods=bool(row["watch_vods"]),
        download_chat=bool(row["download_chat"]),
        video_types=tuple(_load_str_list(row["video_types_json"])),
        title_regex=_text_or_none(row["title_regex"]),
        max_video_age_days=int(row["max_video_age_days"]),
        categories=tuple(_load_str_list(row["categories_json"])),
        apply_categories_to_live=bool(row["apply_categories_to_live"]),
        last_checked_at=parse_optional_iso(row["last_checked_at"]),
    )


def _row_to_video(row: sqlite3.Row) -> VideoRecord:
    return VideoRecord(
        video_id=str(row["id"]),
        channel_id=str(row["channel_id"]),
        platform=str(row["platform"]),
        ext_id=_text_or_none(row["ext_id"]),
        ext_stream_id=_text_or_none(row["ext_stream_id"]),
        video_type=str(row["video_type"]),
        title=str(row["title"]),
        duration=int(row["duration"]),
        views=int(row["views"]),
        status=cast(VideoStatus, str(row["status"])),
        folder_path=_text_or_none(row["folder_path"]),
        info_path=_text_or_none(row["info_path"]),
        thumbnail_path=_text_or_none(row["thumbnail_path"]),
        video_path=_text_or_none(row["video_path"]),
        chat_path=_text_or_none(row["chat_path"]),
        chat_video_path=_text_or_none(row["chat_video_path"]),
        streamed_at=parse_iso_datetime(str(row["streamed_at"])),
        created_at=parse_iso_datetime(str(row["created_at"])),
    )


def _text_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _load_str_list(raw: object) -> list[str]:
    if not isinstance(raw, str):
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [item.strip() for item in cast(list[object], parsed) if isinstance(item, str) and item.strip()]
