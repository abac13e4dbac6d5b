from __future__ import annotations

from typing import Any, cast
from urllib.parse import parse_qs, urlsplit

import pytest

from backend.archiver.platforms.errors import (
    AuthenticationFailed,
    CapabilityNotImplemented,
    DecodeFailed,
    NoStreamsFound,
    NotFound,
    UnexpectedStatus,
)
from backend.archiver.platforms.token_cache import TokenCache
from backend.archiver.platforms.twitch import (
    TwitchSource,
    convert_chapters,
    largest_emote_scale,
    parse_twitch_duration,
)
from backend.archiver.platforms.twitch_gql import (
    GqlChapter,
    GqlMutedSegment,
    GqlVideo,
    PlaybackAccessToken,
)

from fakes import FakeTransport


class _FakeGql:
    def __init__(self) -> None:
        self.chapters: list[GqlChapter] = []
        self.muted: list[GqlMutedSegment] = []

    def get_video(self, video_id: str) -> GqlVideo:
        return GqlVideo(
            broadcast_type="ARCHIVE",
            restriction_type=None,
            game_id="509658",
            game_name="Just Chatting",
            title="title",
            seek_previews_url="https://static.example/storyboard.json",
        )

    def get_chapters(self, video_id: str) -> list[GqlChapter]:
        return self.chapters

    def get_muted_segments(self, video_id: str) -> list[GqlMutedSegment]:
        return self.muted

    def get_playback_access_token(self, channel_name: str) -> PlaybackAccessToken:
        return PlaybackAccessToken(value='{"channel":"x"}', signature="sig")


def _helix_video(video_id: str, **overrides: Any) -> dict[str, Any]:
    item: dict[str, Any] = {
        "id": video_id,
        "stream_id": f"stream-{video_id}",
        "user_id": "141981764",
        "user_login": "twitchdev",
        "user_name": "TwitchDev",
        "title": f"Video {video_id}",
        "description": "",
        "created_at": "2024-05-01T10:00:00Z",
        "published_at": "2024-05-01T10:00:00Z",
        "url": f"https://www.twitch.tv/videos/{video_id}",
        "thumbnail_url": "https://static.example/%{width}x%{height}.jpg",
        "viewable": "public",
        "view_count": 5,
        "language": "en",
        "type": "archive",
        "duration": "1h2m3s",
    }
    item.update(overrides)
    return item


def _source(transport: FakeTransport, gql: _FakeGql | None = None) -> TwitchSource:
    return TwitchSource(
        client_id="client-1",
        client_secret="secret-1",
        token_cache=TokenCache(),
        transport=transport,
        gql_client=cast(Any, gql or _FakeGql()),
        retry_delay_seconds=0,
    )


def _query(url: str) -> dict[str, list[str]]:
    return parse_qs(urlsplit(url).query)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("1h2m3s", 3723), ("45m", 2700), ("59s", 59), ("2h", 7200), ("3h0m1s", 10801)],
)
def test_parse_twitch_duration(raw: str, expected: int) -> None:
    assert parse_twitch_duration(raw) == expected


@pytest.mark.parametrize("raw", ["", "1d", "abc", "1m2h"])
def test_parse_twitch_duration_rejects_malformed(raw: str) -> None:
    with pytest.raises(DecodeFailed):
        parse_twitch_duration(raw)


def test_convert_chapters_is_contiguous_and_ends_at_duration() -> None:
    chapters = [
        GqlChapter("c1", "GAME_CHANGE", "Intro", 0, 600_000),
        GqlChapter("c2", "GAME_CHANGE", "Main", 600_500, 1_000_000),
        GqlChapter("c3", "GAME_CHANGE", "Outro", 1_800_000, 200_000),
    ]

    converted = convert_chapters(chapters, duration=2000)

    assert [(chapter.start, chapter.end) for chapter in converted] == [(0, 600), (600, 1800), (1800, 2000)]
    assert converted[1].title == "Main"
    for current, following in zip(converted, converted[1:], strict=False):
        assert current.end == following.start


def test_largest_emote_scale_picks_highest_value() -> None:
    assert largest_emote_scale(["1.0", "3.0", "2.0"]) == "3.0"
    assert largest_emote_scale([]) == "0"


def test_authenticate_stores_token_in_cache() -> None:
    transport = FakeTransport()
    transport.queue(200, {"access_token": "app-token", "expires_in": 5_000_000, "token_type": "bearer"})
    cache = TokenCache()
    source = TwitchSource(client_id="client-1", client_secret="secret-1", token_cache=cache, transport=transport)

    info = source.authenticate()

    assert info.access_token == "app-token"
    assert cache.get("twitch") == "app-token"
    request = transport.requests[0]
    assert request.method == "POST"
    assert _query(request.url)["grant_type"] == ["client_credentials"]


def test_authenticate_raises_on_rejected_credentials() -> None:
    transport = FakeTransport()
    transport.queue(400, {"message": "invalid client secret"})

    with pytest.raises(AuthenticationFailed):
        _source(transport).authenticate()


def test_get_video_merges_chapters_and_muted_segments() -> None:
    transport = FakeTransport()
    transport.queue(200, {"data": [_helix_video("v1", duration="1h")]})
    gql = _FakeGql()
    gql.chapters = [GqlChapter("c1", "GAME_CHANGE", "Only", 0, 3_600_000)]
    gql.muted = [GqlMutedSegment(offset=60, duration=30)]

    info = _source(transport, gql).get_video("v1", with_chapters=True, with_muted_segments=True)

    assert info.duration == 3600
    assert info.category == "Just Chatting"
    assert info.sprite_thumbnails_manifest_url == "https://static.example/storyboard.json"
    assert [(chapter.start, chapter.end) for chapter in info.chapters] == [(0, 3600)]
    assert [(segment.offset, segment.duration) for segment in info.muted_segments] == [(60, 30)]


def test_get_video_missing_raises_not_found() -> None:
    transport = FakeTransport()
    transport.queue(200, {"data": []})

    with pytest.raises(NotFound):
        _source(transport).get_video("missing")


def test_get_videos_collects_every_page() -> None:
    transport = FakeTransport()
    transport.queue(200, {"data": [_helix_video("1"), _helix_video("2")], "pagination": {"cursor": "page-2"}})
    transport.queue(200, {"data": [_helix_video("3")], "pagination": {}})

    videos = _source(transport).get_videos("141981764", "archive")

    assert [video.video_id for video in videos] == ["1", "2", "3"]
    first, second = (_query(request.url) for request in transport.requests)
    assert first["first"] == ["100"]
    assert "after" not in first
    assert second["after"] == ["page-2"]
    assert second["type"] == ["archive"]


def test_get_live_streams_raises_when_nobody_is_live() -> None:
    transport = FakeTransport()
    transport.queue(200, {"data": []})

    with pytest.raises(NoStreamsFound):
        _source(transport).get_live_streams(["a", "b"])

    assert _query(transport.requests[0].url)["user_login"] == ["a", "b"]


def test_get_live_streams_batches_logins_under_the_helix_limit() -> None:
    transport = FakeTransport()
    transport.queue(200, {"data": []})
    transport.queue(
        200,
        {
            "data": [
                {
                    "id": "s120",
                    "user_id": "u120",
                    "user_login": "channel120",
                    "user_name": "Channel120",
                    "game_id": "1",
                    "game_name": "Chess",
                    "type": "live",
                    "title": "t",
                    "viewer_count": 3,
                    "started_at": "2024-05-01T09:00:00Z",
                    "language": "en",
                    "thumbnail_url": "",
                }
            ]
        },
    )
    names = [f"channel{index}" for index in range(150)]

    streams = _source(transport).get_live_streams(names)

    batches = [_query(request.url)["user_login"] for request in transport.requests]
    assert [len(batch) for batch in batches] == [99, 51]
    assert batches[0][0] == "channel0"
    assert batches[1][0] == "channel99"
    assert _query(transport.requests[0].url)["first"] == ["100"]
    assert [stream.stream_id for stream in streams] == ["s120"]


def test_get_streams_honours_limit() -> None:
    transport = FakeTransport()
    live = {
        "id": "s1",
        "user_id": "u1",
        "user_login": "one",
        "user_name": "One",
        "game_id": "1",
        "game_name": "Chess",
        "type": "live",
        "title": "t",
        "viewer_count": 3,
        "started_at": "2024-05-01T09:00:00Z",
        "language": "en",
        "thumbnail_url": "",
    }
    transport.queue(200, {"data": [live, {**live, "id": "s2"}], "pagination": {"cursor": "more"}})

    streams = _source(transport).get_streams(2)

    assert [stream.stream_id for stream in streams] == ["s1", "s2"]
    assert len(transport.requests) == 1


@pytest.mark.parametrize(("status", "expected"), [(200, True), (403, True), (404, False)])
def test_check_if_stream_is_live(status: int, expected: bool) -> None:
    transport = FakeTransport()
    transport.queue(status, body=b"#EXTM3U")

    assert _source(transport).check_if_stream_is_live("streamer") is expected
    assert transport.requests[0].url.startswith("https://usher.ttvnw.net/api/channel/hls/streamer.m3u8?")


def test_check_if_stream_is_live_surfaces_unexpected_status() -> None:
    transport = FakeTransport()
    transport.queue(500, body=b"oops")

    with pytest.raises(UnexpectedStatus):
        _source(transport).check_if_stream_is_live("streamer")


def test_unimplemented_capability_is_not_retryable() -> None:
    source = _source(FakeTransport())

    with pytest.raises(CapabilityNotImplemented) as exc_info:
        source.download_vod_chat(
            "v1",
            start_time=cast(Any, None),
            end_time=cast(Any, None),
            output_path=cast(Any, None),
        )

    assert exc_info.value.retryable is False
