from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

from backend.archiver.models.platform_contracts import (
    Badge,
    Category,
    ChannelInfo,
    ClipInfo,
    ClipsFilter,
    ConnectionInfo,
    Emote,
    LiveStreamInfo,
    VideoInfo,
    VideoType,
)
from backend.archiver.platforms.errors import CapabilityNotImplemented, DecodeFailed


class PlatformSource:
    """Normalized capability set shared by every streaming platform.

    Variants override the capabilities they support. Everything else raises
    `CapabilityNotImplemented` so callers can branch on capability instead of
    receiving silently empty data.
    """

    name: str = "platform"

    def authenticate(self) -> ConnectionInfo:
        raise CapabilityNotImplemented(self.name, "authenticate")

    def get_video(
        self,
        video_id: str,
        *,
        with_chapters: bool = False,
        with_muted_segments: bool = False,
    ) -> VideoInfo:
        raise CapabilityNotImplemented(self.name, "get_video")

    def get_live_stream(self, channel_name: str) -> LiveStreamInfo:
        raise CapabilityNotImplemented(self.name, "get_live_stream")

    def get_live_streams(self, channel_names: Sequence[str]) -> list[LiveStreamInfo]:
        raise CapabilityNotImplemented(self.name, "get_live_streams")

    def get_channel(self, channel_name: str) -> ChannelInfo:
        raise CapabilityNotImplemented(self.name, "get_channel")

    def get_videos(
        self,
        channel_id: str,
        video_type: VideoType,
        *,
        with_chapters: bool = False,
        with_muted_segments: bool = False,
    ) -> list[VideoInfo]:
        raise CapabilityNotImplemented(self.name, "get_videos")

    def get_categories(self) -> list[Category]:
        raise CapabilityNotImplemented(self.name, "get_categories")

    def get_global_badges(self) -> list[Badge]:
        raise CapabilityNotImplemented(self.name, "get_global_badges")

    def get_channel_badges(self, channel_id: str) -> list[Badge]:
        raise CapabilityNotImplemented(self.name, "get_channel_badges")

    def get_global_emotes(self) -> list[Emote]:
        raise CapabilityNotImplemented(self.name, "get_global_emotes")

    def get_channel_emotes(self, channel_id: str) -> list[Emote]:
        raise CapabilityNotImplemented(self.name, "get_channel_emotes")

    def get_channel_clips(self, channel_id: str, clips_filter: ClipsFilter) -> list[ClipInfo]:
        raise CapabilityNotImplemented(self.name, "get_channel_clips")

    def get_clip(self, clip_id: str) -> ClipInfo:
        raise CapabilityNotImplemented(self.name, "get_clip")

    def check_if_stream_is_live(self, channel_name: str) -> bool:
        raise CapabilityNotImplemented(self.name, "check_if_stream_is_live")

    def get_streams(self, limit: int) -> list[LiveStreamInfo]:
        raise CapabilityNotImplemented(self.name, "get_streams")

    def download_vod_chat(
        self,
        video_id: str,
        *,
        start_time: datetime,
        end_time: datetime,
        output_path: Path,
    ) -> int:
        raise CapabilityNotImplemented(self.name, "download_vod_chat")


def decode_json_object(raw_body: bytes, *, context: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw_body.decode("utf-8", errors="replace"))
    except json.JSONDecodeError as exc:
        raise DecodeFailed(f"failed to decode {context} response: {exc}") from exc
    if not isinstance(parsed, dict):
        raise DecodeFailed(f"{context} response is not a JSON object")
    return cast(dict[str, Any], parsed)


def as_dict(value: object) -> dict[str, Any]:
    if isinstance(value, dict):
        return cast(dict[str, Any], value)
    return {}


def as_list(value: object) -> list[Any]:
    if isinstance(value, list):
        return cast(list[Any], value)
    return []


def as_text(value: object, default: str = "") -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return default
    if isinstance(value, int | float):
        return str(value)
    return default


def as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return default
    return default


def parse_timestamp(value: object, *, field_name: str) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise DecodeFailed(f"missing timestamp field {field_name}")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise DecodeFailed(f"invalid timestamp for {field_name}: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
