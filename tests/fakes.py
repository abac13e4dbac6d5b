"""Fakes shared by the test modules."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from backend.archiver.models.platform_contracts import (
    Category,
    ChannelInfo,
    ConnectionInfo,
    LiveStreamInfo,
    VideoInfo,
    VideoType,
)
from backend.archiver.platforms.base import PlatformSource
from backend.archiver.platforms.errors import NoStreamsFound, NotFound, UnexpectedStatus
from backend.archiver.platforms.executor import HttpResponse


@dataclass
class RecordedRequest:
    method: str
    url: str
    headers: dict[str, str]
    body: bytes | None


@dataclass
class FakeTransport:
    """Replays queued responses, or answers through `handler` when one is set."""

    responses: list[HttpResponse] = field(default_factory=list)
    handler: Callable[[str, str], HttpResponse] | None = None
    requests: list[RecordedRequest] = field(default_factory=list)

    def queue(self, status: int, payload: Any = None, *, body: bytes | None = None) -> None:
        raw = body if body is not None else json.dumps(payload if payload is not None else {}).encode()
        self.responses.append(HttpResponse(status=status, body=raw))

    def send(
        self,
        *,
        method: str,
        url: str,
        headers: Any,
        body: bytes | None,
        timeout: float,
    ) -> HttpResponse:
        _ = timeout
        self.requests.append(RecordedRequest(method=method, url=url, headers=dict(headers), body=body))
        if self.handler is not None:
            return self.handler(method, url)
        if not self.responses:
            raise AssertionError(f"unexpected request {method} {url}")
        return self.responses.pop(0)


def json_response(payload: Any, status: int = 200) -> HttpResponse:
    return HttpResponse(status=status, body=json.dumps(payload).encode())


def make_video_info(video_id: str = "v1", **overrides: Any) -> VideoInfo:
    values: dict[str, Any] = {
        "video_id": video_id,
        "stream_id": "s1",
        "user_id": "u1",
        "user_login": "streamer",
        "user_name": "Streamer",
        "title": "Speedrun practice",
        "description": "",
        "created_at": datetime(2024, 5, 1, 10, 0, tzinfo=UTC),
        "published_at": datetime(2024, 5, 1, 10, 0, tzinfo=UTC),
        "url": f"https://www.twitch.tv/videos/{video_id}",
        "thumbnail_url": "https://static.example/thumb-%{width}x%{height}.jpg",
        "viewable": "public",
        "view_count": 12,
        "language": "en",
        "video_type": "archive",
        "duration": 3600,
    }
    values.update(overrides)
    return VideoInfo(**values)


def make_live_stream(login: str = "streamer", stream_id: str = "s1", **overrides: Any) -> LiveStreamInfo:
    values: dict[str, Any] = {
        "stream_id": stream_id,
        "user_id": "u1",
        "user_login": login,
        "user_name": login.title(),
        "game_id": "g1",
        "game_name": "Just Chatting",
        "stream_type": "live",
        "title": "Live now",
        "viewer_count": 40,
        "started_at": datetime(2024, 5, 1, 9, 0, tzinfo=UTC),
        "language": "en",
        "thumbnail_url": "https://static.example/live-{width}x{height}.jpg",
    }
    values.update(overrides)
    return LiveStreamInfo(**values)


class FakePlatform(PlatformSource):
    """In-memory platform keyed by login and video id."""

    def __init__(self, name: str = "twitch") -> None:
        self.name = name
        self.videos: dict[str, VideoInfo] = {}
        self.channel_videos: dict[str, list[VideoInfo]] = {}
        self.live: dict[str, LiveStreamInfo] = {}
        self.batch_live_supported = True
        self.failing_video_ids: set[str] = set()
        self.calls: list[str] = []

    def authenticate(self) -> ConnectionInfo:
        self.calls.append("authenticate")
        return ConnectionInfo(client_id="id", client_secret="secret", access_token="token")

    def get_video(
        self,
        video_id: str,
        *,
        with_chapters: bool = False,
        with_muted_segments: bool = False,
    ) -> VideoInfo:
        self.calls.append(f"get_video:{video_id}")
        if video_id in self.failing_video_ids:
            raise UnexpectedStatus(status_code=503, body="unavailable")
        if video_id not in self.videos:
            raise NotFound(f"video not found: {video_id}")
        return self.videos[video_id]

    def get_live_stream(self, channel_name: str) -> LiveStreamInfo:
        self.calls.append(f"get_live_stream:{channel_name}")
        if channel_name not in self.live:
            raise NoStreamsFound()
        return self.live[channel_name]

    def get_live_streams(self, channel_names: Sequence[str]) -> list[LiveStreamInfo]:
        if not self.batch_live_supported:
            return super().get_live_streams(channel_names)
        self.calls.append("get_live_streams")
        streams = [self.live[name] for name in channel_names if name in self.live]
        if not streams:
            raise NoStreamsFound()
        return streams

    def get_videos(
        self,
        channel_id: str,
        video_type: VideoType,
        *,
        with_chapters: bool = False,
        with_muted_segments: bool = False,
    ) -> list[VideoInfo]:
        self.calls.append(f"get_videos:{channel_id}:{video_type}")
        videos = self.channel_videos.get(channel_id, [])
        return [video for video in videos if video.video_type == video_type]

    def get_channel(self, channel_name: str) -> ChannelInfo:
        return ChannelInfo(
            channel_id=f"id-{channel_name}",
            login=channel_name,
            display_name=channel_name.title(),
            channel_type="",
            broadcaster_type="partner",
            description="",
            profile_image_url="",
            offline_image_url="",
            view_count=0,
            created_at=datetime(2020, 1, 1, tzinfo=UTC),
        )

    def get_categories(self) -> list[Category]:
        return [
            Category(category_id="509658", name="Just Chatting"),
            Category(category_id="33214", name="Fortnite"),
        ]


@dataclass
class FakeMedia:
    """Writes placeholder files where the real tools would."""

    calls: list[tuple[str, str]] = field(default_factory=list)

    def download_file(self, url: str, output_path: Path) -> None:
        self._touch("download_file", output_path, url)

    def download_video(self, *, source_url: str, output_path: Path, quality: str) -> None:
        self._touch("download_video", output_path, source_url)

    def convert_video(self, *, input_path: Path, output_path: Path) -> None:
        assert input_path.exists()
        self._touch("convert_video", output_path, str(input_path))

    def download_chat(self, *, video_id: str, output_path: Path) -> None:
        self._touch("download_chat", output_path, video_id)

    def render_chat(self, *, chat_path: Path, output_path: Path) -> None:
        assert chat_path.exists()
        self._touch("render_chat", output_path, str(chat_path))

    def _touch(self, name: str, output_path: Path, source: str) -> None:
        self.calls.append((name, source))
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"media")
