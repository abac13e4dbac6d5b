from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS channels (
    id TEXT PRIMARY KEY,
    platform TEXT NOT NULL,
    ext_id TEXT NOT NULL,
    name TEXT NOT NULL,
    display_name TEXT NOT NULL,
    image_path TEXT NULL,
    watch_live INTEGER NOT NULL DEFAULT 0,
    watch_vods INTEGER NOT NULL DEFAULT 0,
    download_chat INTEGER NOT NULL DEFAULT 1,
    video_types_json TEXT NOT NULL DEFAULT '["archive"]',
    title_regex TEXT NULL,
    max_video_age_days INTEGER NOT NULL DEFAULT 0,
    categories_json TEXT NOT NULL DEFAULT '[]',
    apply_categories_to_live INTEGER NOT NULL DEFAULT 0,
    last_checked_at TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(platform, name)
);

CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    ext_id TEXT NULL,
    ext_stream_id TEXT NULL,
    video_type TEXT NOT NULL,
    title TEXT NOT NULL,
    duration INTEGER NOT NULL DEFAULT 0,
    views INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    folder_path TEXT NULL,
    info_path TEXT NULL,
    thumbnail_path TEXT NULL,
    video_path TEXT NULL,
    chat_path TEXT NULL,
    chat_video_path TEXT NULL,
    streamed_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(channel_id) REFERENCES channels(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_videos_channel_type
ON videos(channel_id, video_type);

CREATE INDEX IF NOT EXISTS idx_videos_ext_id
ON videos(platform, ext_id);

CREATE TABLE IF NOT EXISTS chapters (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    ext_id TEXT NOT NULL,
    chapter_type TEXT NOT NULL,
    title TEXT NOT NULL,
    start_seconds INTEGER NOT NULL,
    end_seconds INTEGER NOT NULL,
    FOREIGN KEY(video_id) REFERENCES videos(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS muted_segments (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    start_seconds INTEGER NOT NULL,
    end_seconds INTEGER NOT NULL,
    FOREIGN KEY(video_id) REFERENCES videos(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    platform TEXT NOT NULL,
    name TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS blocked_videos (
    ext_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    queue TEXT NOT NULL,
    args_json TEXT NOT NULL,
    state TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    available_at TEXT NOT NULL,
    last_error TEXT NULL,
    heartbeat_at TEXT NULL,
    finished_at TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_queue_state_available
ON jobs(queue, state, available_at);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def immediate_transaction(self) -> Iterator[sqlite3.Connection]:
        """Take the write lock up front so concurrent claimers serialize."""
        conn = sqlite3.connect(self._path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
            _maybe_add_channel_category_columns(conn)


_CHANNEL_CATEGORY_COLUMNS = (
    ("categories_json", "TEXT NOT NULL DEFAULT '[]'"),
    ("apply_categories_to_live", "INTEGER NOT NULL DEFAULT 0"),
)


def _maybe_add_channel_category_columns(conn: sqlite3.Connection) -> None:
    # Databases created before category restrictions lack these columns.
    columns = _table_columns(conn, "channels")
    for name, definition in _CHANNEL_CATEGORY_COLUMNS:
        if name not in columns:
            conn.execute(f"ALTER TABLE channels ADD COLUMN {name} {definition}")


def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row["name"]) for row in rows}
