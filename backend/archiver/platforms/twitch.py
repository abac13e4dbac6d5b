from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote, urlencode

from backend.archiver import deadline
from backend.archiver.models.platform_contracts import (
    UNKNOWN,
    Badge,
    Category,
    ChannelInfo,
    Chapter,
    ClipInfo,
    ClipsFilter,
    ConnectionInfo,
    Emote,
    LiveStreamInfo,
    MutedSegment,
    VideoInfo,
    VideoType,
)
from backend.archiver.platforms.auth import describe_expiry, request_client_credentials_token
from backend.archiver.platforms.base import (
    PlatformSource,
    as_dict,
    as_int,
    as_list,
    as_text,
    decode_json_object,
    parse_timestamp,
)
from backend.archiver.platforms.errors import (
    DecodeFailed,
    NoStreamsFound,
    NotFound,
    UnexpectedStatus,
)
from backend.archiver.platforms.executor import (
    CHROME_USER_AGENT,
    HttpTransport,
    QueryParams,
    RequestExecutor,
    UrllibTransport,
)
from backend.archiver.platforms.pagination import accumulate_pages
from backend.archiver.platforms.token_cache import TokenCache
from backend.archiver.platforms.twitch_gql import GqlChapter, TwitchGqlClient

LOGGER = logging.getLogger("vod_archiver.platforms.twitch")

TWITCH_API_URL = "https://api.twitch.tv/helix"
TWITCH_AUTH_URL = "https://id.twitch.tv/oauth2/token"
TWITCH_USHER_URL = "https://usher.ttvnw.net/api/channel/hls"
EMOTE_URL_TEMPLATE = "https://static-cdn.jtvnw.net/emoticons/v2/{id}/{format}/{theme}/{scale}"
PAGE_SIZE = 100
# Helix caps user_login filters at 100 per request.
LIVE_LOGIN_BATCH_SIZE = 99
_DURATION_PATTERN = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


class TwitchSource(PlatformSource):
    name = "twitch"

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_cache: TokenCache,
        transport: HttpTransport | None = None,
        gql_client: TwitchGqlClient | None = None,
        gql_oauth_token: str | None = None,
        max_attempts: int = 3,
        retry_delay_seconds: float = 5.0,
        http_timeout_seconds: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_cache = token_cache
        self._transport: HttpTransport = transport if transport is not None else UrllibTransport()
        self._http_timeout_seconds = http_timeout_seconds
        self._executor = RequestExecutor(
            platform=self.name,
            base_url=TWITCH_API_URL,
            token_cache=token_cache,
            transport=self._transport,
            default_headers={"Client-ID": client_id},
            max_attempts=max_attempts,
            retry_delay_seconds=retry_delay_seconds,
            http_timeout_seconds=http_timeout_seconds,
        )
        self._gql = (
            gql_client
            if gql_client is not None
            else TwitchGqlClient(
                transport=self._transport,
                oauth_token=gql_oauth_token,
                http_timeout_seconds=http_timeout_seconds,
            )
        )

    def authenticate(self) -> ConnectionInfo:
        token = request_client_credentials_token(
            transport=self._transport,
            token_url=TWITCH_AUTH_URL,
            client_id=self._client_id,
            client_secret=self._client_secret,
            form_encoded=False,
            http_timeout_seconds=self._http_timeout_seconds,
        )
        self._token_cache.set(self.name, token.access_token)
        LOGGER.info(
            "twitch connection authenticated expires_in=%s",
            describe_expiry(token.expires_in),
        )
        return ConnectionInfo(
            client_id=self._client_id,
            client_secret=self._client_secret,
            access_token=token.access_token,
        )

    def get_video(
        self,
        video_id: str,
        *,
        with_chapters: bool = False,
        with_muted_segments: bool = False,
    ) -> VideoInfo:
        data = self._get_data("videos", {"id": video_id})
        if not data:
            raise NotFound(f"video not found: {video_id}")

        info = _video_from_helix(data[0])
        gql_video = self._gql.get_video(video_id)
        chapters: tuple[Chapter, ...] = ()
        muted_segments: tuple[MutedSegment, ...] = ()
        if with_chapters:
            chapters = convert_chapters(self._gql.get_chapters(info.video_id), info.duration)
        if with_muted_segments:
            muted_segments = tuple(
                MutedSegment(offset=segment.offset, duration=segment.duration)
                for segment in self._gql.get_muted_segments(info.video_id)
            )

        return VideoInfo(
            **{
                **_video_fields(info),
                "category": gql_video.game_name,
                "restriction": gql_video.restriction_type,
                "sprite_thumbnails_manifest_url": gql_video.seek_previews_url,
                "chapters": chapters,
                "muted_segments": muted_segments,
            }
        )

    def get_live_stream(self, channel_name: str) -> LiveStreamInfo:
        data = self._get_data("streams", {"user_login": channel_name})
        if not data:
            raise NoStreamsFound(f"failed to fetch stream for channel {channel_name}: no streams found")
        return _live_stream_from_helix(data[0])

    def get_live_streams(self, channel_names: Sequence[str]) -> list[LiveStreamInfo]:
        names = list(channel_names)
        streams: list[LiveStreamInfo] = []
        for start in range(0, len(names), LIVE_LOGIN_BATCH_SIZE):
            batch = names[start : start + LIVE_LOGIN_BATCH_SIZE]
            data = self._get_data("streams", {"user_login": batch, "first": str(PAGE_SIZE)})
            if not data:
                LOGGER.debug("no live streams in batch offset=%s size=%s", start, len(batch))
                continue
            streams.extend(_live_stream_from_helix(item) for item in data)
        if not streams:
            raise NoStreamsFound("failed to fetch stream for channels: no streams found")
        return streams

    def get_channel(self, channel_name: str) -> ChannelInfo:
        data = self._get_data("users", {"login": channel_name})
        if not data:
            raise NotFound(f"channel not found: {channel_name}")
        item = data[0]
        return ChannelInfo(
            channel_id=as_text(item.get("id")),
            login=as_text(item.get("login")),
            display_name=as_text(item.get("display_name")),
            channel_type=as_text(item.get("type")),
            broadcaster_type=as_text(item.get("broadcaster_type")),
            description=as_text(item.get("description")),
            profile_image_url=as_text(item.get("profile_image_url")),
            offline_image_url=as_text(item.get("offline_image_url")),
            view_count=as_int(item.get("view_count")),
            created_at=parse_timestamp(item.get("created_at"), field_name="created_at"),
        )

    def get_videos(
        self,
        channel_id: str,
        video_type: VideoType,
        *,
        with_chapters: bool = False,
        with_muted_segments: bool = False,
    ) -> list[VideoInfo]:
        items = self._paginate(
            "videos",
            {"user_id": channel_id, "first": str(PAGE_SIZE), "type": video_type},
        )
        if with_chapters or with_muted_segments:
            return [
                self.get_video(
                    as_text(item.get("id")),
                    with_chapters=with_chapters,
                    with_muted_segments=with_muted_segments,
                )
                for item in items
            ]
        return [_video_from_helix(item) for item in items]

    def get_categories(self) -> list[Category]:
        return [
            Category(category_id=as_text(item.get("id")), name=as_text(item.get("name")))
            for item in self._paginate("games/top", {"first": str(PAGE_SIZE)})
        ]

    def get_global_badges(self) -> list[Badge]:
        data = self._get_data("chat/badges/global", None)
        if not data:
            raise NotFound("badges not found")
        return _flatten_badges(data)

    def get_channel_badges(self, channel_id: str) -> list[Badge]:
        data = self._get_data("chat/badges", {"broadcaster_id": channel_id})
        if not data:
            raise NotFound("badges not found")
        return _flatten_badges(data)

    def get_global_emotes(self) -> list[Emote]:
        data = self._get_data("chat/emotes/global", None)
        if not data:
            raise NotFound("emotes not found")
        return [_emote_from_helix(item, emote_type="global") for item in data]

    def get_channel_emotes(self, channel_id: str) -> list[Emote]:
        data = self._get_data("chat/emotes", {"broadcaster_id": channel_id})
        if not data:
            raise NotFound("emotes not found")
        return [_emote_from_helix(item, emote_type="subscription") for item in data]

    def get_channel_clips(self, channel_id: str, clips_filter: ClipsFilter) -> list[ClipInfo]:
        page_size = clips_filter.limit if 0 < clips_filter.limit <= PAGE_SIZE else PAGE_SIZE
        items = self._paginate(
            "clips",
            {
                "broadcaster_id": channel_id,
                "started_at": clips_filter.started_at.isoformat(),
                "ended_at": clips_filter.ended_at.isoformat(),
                "first": str(page_size),
            },
            limit=clips_filter.limit or None,
        )
        return [_clip_from_helix(item) for item in items]

    def get_clip(self, clip_id: str) -> ClipInfo:
        data = self._get_data("clips", {"id": clip_id})
        if not data:
            raise NotFound(f"clip not found: {clip_id}")
        return _clip_from_helix(data[0])

    def check_if_stream_is_live(self, channel_name: str) -> bool:
        token = self._gql.get_playback_access_token(channel_name)
        query = urlencode({"sig": token.signature, "token": token.value})
        response = self._transport.send(
            method="GET",
            url=f"{TWITCH_USHER_URL}/{quote(channel_name)}.m3u8?{query}",
            headers={"User-Agent": CHROME_USER_AGENT},
            body=None,
            timeout=deadline.bounded_timeout(10.0),
        )
        # Anonymous playlist requests answer 403 for sub-only or geo-blocked streams.
        if response.status in {200, 403}:
            return True
        if response.status == 404:
            return False
        raise UnexpectedStatus(status_code=response.status, body=response.body)

    def get_streams(self, limit: int) -> list[LiveStreamInfo]:
        effective_limit = max(1, limit)
        items = self._paginate(
            "streams",
            {"first": str(min(effective_limit, PAGE_SIZE))},
            limit=effective_limit,
        )
        return [_live_stream_from_helix(item) for item in items]

    def _get_data(self, path: str, params: QueryParams | None) -> list[dict[str, Any]]:
        payload = decode_json_object(self._executor.execute("GET", path, params), context=path)
        return [as_dict(item) for item in as_list(payload.get("data"))]

    def _paginate(
        self,
        path: str,
        params: dict[str, str],
        *,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        def fetch_page(cursor: str) -> tuple[list[dict[str, Any]], str]:
            page_params = dict(params)
            if cursor:
                page_params["after"] = cursor
            payload = decode_json_object(
                self._executor.execute("GET", path, page_params),
                context=path,
            )
            next_cursor = as_text(as_dict(payload.get("pagination")).get("cursor"))
            return [as_dict(item) for item in as_list(payload.get("data"))], next_cursor

        return accumulate_pages(fetch_page, limit=limit)


def parse_twitch_duration(raw: str) -> int:
    """Convert Helix durations such as `1h2m3s` to whole seconds."""
    match = _DURATION_PATTERN.match(raw.strip())
    if match is None or not raw.strip():
        raise DecodeFailed(f"error parsing duration: {raw!r}")
    hours, minutes, seconds = (int(group) if group else 0 for group in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def convert_chapters(chapters: Sequence[GqlChapter], duration: int) -> tuple[Chapter, ...]:
    """Chapters arrive in milliseconds; each one ends where the next begins."""
    converted: list[Chapter] = []
    for index, chapter in enumerate(chapters):
        if index + 1 < len(chapters):
            end = chapters[index + 1].position_milliseconds // 1000
        else:
            end = duration
        converted.append(
            Chapter(
                chapter_id=chapter.chapter_id,
                chapter_type=chapter.chapter_type,
                title=chapter.description,
                start=chapter.position_milliseconds // 1000,
                end=end,
            )
        )
    return tuple(converted)


def largest_emote_scale(values: Sequence[str]) -> str:
    if not values:
        return "0"
    try:
        highest = float(values[0])
    except ValueError:
        return "0"
    for value in values[1:]:
        try:
            highest = max(highest, float(value))
        except ValueError:
            continue
    return f"{highest:.1f}"


def _video_from_helix(item: dict[str, Any]) -> VideoInfo:
    return VideoInfo(
        video_id=as_text(item.get("id")),
        stream_id=as_text(item.get("stream_id")),
        user_id=as_text(item.get("user_id")),
        user_login=as_text(item.get("user_login")),
        user_name=as_text(item.get("user_name")),
        title=as_text(item.get("title")),
        description=as_text(item.get("description")),
        created_at=parse_timestamp(item.get("created_at"), field_name="created_at"),
        published_at=parse_timestamp(item.get("published_at"), field_name="published_at"),
        url=as_text(item.get("url")),
        thumbnail_url=as_text(item.get("thumbnail_url")),
        viewable=as_text(item.get("viewable")),
        view_count=as_int(item.get("view_count")),
        language=as_text(item.get("language"), UNKNOWN) or UNKNOWN,
        video_type=as_text(item.get("type")),
        duration=parse_twitch_duration(as_text(item.get("duration"))),
    )


def _video_fields(info: VideoInfo) -> dict[str, Any]:
    return {name: getattr(info, name) for name in info.__dataclass_fields__}


def _live_stream_from_helix(item: dict[str, Any]) -> LiveStreamInfo:
    return LiveStreamInfo(
        stream_id=as_text(item.get("id")),
        user_id=as_text(item.get("user_id")),
        user_login=as_text(item.get("user_login")),
        user_name=as_text(item.get("user_name")),
        game_id=as_text(item.get("game_id")),
        game_name=as_text(item.get("game_name")),
        stream_type=as_text(item.get("type")),
        title=as_text(item.get("title")),
        viewer_count=as_int(item.get("viewer_count")),
        started_at=parse_timestamp(item.get("started_at"), field_name="started_at"),
        language=as_text(item.get("language")),
        thumbnail_url=as_text(item.get("thumbnail_url")),
    )


def _flatten_badges(data: list[dict[str, Any]]) -> list[Badge]:
    badges: list[Badge] = []
    for badge_set in data:
        set_id = as_text(badge_set.get("set_id"))
        for raw_version in as_list(badge_set.get("versions")):
            version = as_dict(raw_version)
            badges.append(
                Badge(
                    version=as_text(version.get("id")),
                    name=set_id,
                    image_url=as_text(version.get("image_url_4x")),
                    image_url_1x=as_text(version.get("image_url_1x")),
                    image_url_2x=as_text(version.get("image_url_2x")),
                    image_url_4x=as_text(version.get("image_url_4x")),
                    description=as_text(version.get("description")),
                    title=as_text(version.get("title")),
                    click_action=as_text(version.get("click_action")),
                    click_url=as_text(version.get("click_url")),
                )
            )
    return badges


def _emote_from_helix(item: dict[str, Any], *, emote_type: str) -> Emote:
    formats = [as_text(value) for value in as_list(item.get("format"))]
    emote_format = "animated" if "animated" in formats else "static"
    scale = largest_emote_scale([as_text(value) for value in as_list(item.get("scale"))])
    emote_id = as_text(item.get("id"))
    return Emote(
        emote_id=emote_id,
        name=as_text(item.get("name")),
        url=EMOTE_URL_TEMPLATE.format(id=emote_id, format=emote_format, theme="dark", scale=scale),
        emote_format=emote_format,
        emote_type="global" if emote_type == "global" else "subscription",
        scale=scale,
        source="twitch",
    )


def _clip_from_helix(item: dict[str, Any]) -> ClipInfo:
    return ClipInfo(
        clip_id=as_text(item.get("id")),
        url=as_text(item.get("url")),
        channel_id=as_text(item.get("broadcaster_id")),
        channel_name=as_text(item.get("broadcaster_name")),
        creator_id=as_text(item.get("creator_id")),
        creator_name=as_text(item.get("creator_name")),
        video_id=as_text(item.get("video_id")),
        game_id=as_text(item.get("game_id")),
        language=as_text(item.get("language")),
        title=as_text(item.get("title")),
        view_count=as_int(item.get("view_count")),
        created_at=parse_timestamp(item.get("created_at"), field_name="created_at"),
        thumbnail_url=as_text(item.get("thumbnail_url")),
        duration=as_int(item.get("duration")),
        vod_offset=as_int(item.get("vod_offset")),
    )
