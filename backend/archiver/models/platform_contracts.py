from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

VideoType = Literal["archive", "highlight", "upload", "live", "clip"]
EmoteFormat = Literal["static", "animated"]
EmoteType = Literal["global", "subscription"]

UNKNOWN = "unknown"
VIDEO_TYPE_ARCHIVE: VideoType = "archive"
VIDEO_TYPE_HIGHLIGHT: VideoType = "highlight"
VIDEO_TYPE_UPLOAD: VideoType = "upload"
VIDEO_TYPE_LIVE: VideoType = "live"
VIDEO_TYPE_CLIP: VideoType = "clip"


@dataclass(frozen=True)
class ConnectionInfo:
    client_id: str
    client_secret: str
    access_token: str


@dataclass(frozen=True)
class MutedSegment:
    """Seconds relative to the start of the video."""

    offset: int
    duration: int


@dataclass(frozen=True)
class Chapter:
    chapter_id: str
    chapter_type: str
    title: str
    start: int
    end: int


@dataclass(frozen=True)
class VideoInfo:
    video_id: str
    stream_id: str
    user_id: str
    user_login: str
    user_name: str
    title: str
    description: str
    created_at: datetime
    published_at: datetime
    url: str
    thumbnail_url: str
    viewable: str
    view_count: int
    language: str
    video_type: str
    duration: int
    category: str | None = None
    restriction: str | None = None
    chapters: tuple[Chapter, ...] = ()
    muted_segments: tuple[MutedSegment, ...] = ()
    sprite_thumbnails_manifest_url: str | None = None


@dataclass(frozen=True)
class LiveStreamInfo:
    stream_id: str
    user_id: str
    user_login: str
    user_name: str
    game_id: str
    game_name: str
    stream_type: str
    title: str
    viewer_count: int
    started_at: datetime
    language: str
    thumbnail_url: str
    chat_room_id: str = ""


@dataclass(frozen=True)
class ChannelInfo:
    channel_id: str
    login: str
    display_name: str
    channel_type: str
    broadcaster_type: str
    description: str
    profile_image_url: str
    offline_image_url: str
    view_count: int
    created_at: datetime


@dataclass(frozen=True)
class ClipInfo:
    clip_id: str
    url: str
    channel_id: str
    video_id: str
    title: str
    view_count: int
    created_at: datetime
    thumbnail_url: str
    duration: int
    channel_name: str | None = None
    creator_id: str | None = None
    creator_name: str | None = None
    game_id: str | None = None
    language: str | None = None
    vod_offset: int | None = None


@dataclass(frozen=True)
class ClipsFilter:
    started_at: datetime
    ended_at: datetime
    # 0 returns every clip in the window.
    limit: int = 0


@dataclass(frozen=True)
class Category:
    category_id: str
    name: str


@dataclass(frozen=True)
class Badge:
    version: str
    name: str
    image_url: str
    image_url_1x: str
    image_url_2x: str
    image_url_4x: str
    description: str
    title: str
    click_action: str
    click_url: str


@dataclass(frozen=True)
class Emote:
    emote_id: str
    name: str
    url: str
    emote_format: EmoteFormat
    emote_type: EmoteType
    scale: str
    source: str
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class ChatPage:
    messages: list[dict[str, object]] = field(default_factory=list)
    cursor: str = ""
