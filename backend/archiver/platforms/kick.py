from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from backend.archiver.models.platform_contracts import (
    UNKNOWN,
    ChannelInfo,
    ChatPage,
    ConnectionInfo,
    LiveStreamInfo,
    VideoInfo,
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
from backend.archiver.platforms.chat_export import WindowedChatExporter
from backend.archiver.platforms.errors import NoStreamsFound, NotFound
from backend.archiver.platforms.executor import HttpTransport, RequestExecutor, UrllibTransport
from backend.archiver.platforms.token_cache import TokenCache

LOGGER = logging.getLogger("vod_archiver.platforms.kick")

KICK_API_URL = "https://api.kick.com/public/v1"
KICK_PRIVATE_API_URL = "https://kick.com/api/v1"
KICK_PRIVATE_API_V2_URL = "https://kick.com/api/v2"
KICK_AUTH_URL = "https://id.kick.com/oauth/token"


class KickSource(PlatformSource):
    """Kick exposes far less than Twitch; unsupported capabilities fall through to the base."""

    name = "kick"

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_cache: TokenCache,
        transport: HttpTransport | None = None,
        max_attempts: int = 3,
        retry_delay_seconds: float = 5.0,
        http_timeout_seconds: float = 30.0,
        chat_page_delay_seconds: float = 0.1,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_cache = token_cache
        self._transport: HttpTransport = transport if transport is not None else UrllibTransport()
        self._http_timeout_seconds = http_timeout_seconds
        self._chat_page_delay_seconds = chat_page_delay_seconds
        self._executor = RequestExecutor(
            platform=self.name,
            base_url=KICK_API_URL,
            token_cache=token_cache,
            transport=self._transport,
            max_attempts=max_attempts,
            retry_delay_seconds=retry_delay_seconds,
            http_timeout_seconds=http_timeout_seconds,
        )

    def authenticate(self) -> ConnectionInfo:
        token = request_client_credentials_token(
            transport=self._transport,
            token_url=KICK_AUTH_URL,
            client_id=self._client_id,
            client_secret=self._client_secret,
            form_encoded=True,
            http_timeout_seconds=self._http_timeout_seconds,
        )
        self._token_cache.set(self.name, token.access_token)
        LOGGER.info(
            "kick connection authenticated expires_in=%s",
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
        payload = self._get_object(f"video/{video_id}", base_url=KICK_PRIVATE_API_URL)
        livestream = as_dict(payload.get("livestream"))
        channel = as_dict(livestream.get("channel"))
        categories = as_list(livestream.get("categories"))
        category = as_text(as_dict(categories[0]).get("name"), UNKNOWN) if categories else UNKNOWN
        created_at = parse_timestamp(payload.get("created_at"), field_name="created_at")

        return VideoInfo(
            video_id=as_text(payload.get("id")),
            stream_id=as_text(payload.get("live_stream_id")),
            user_id=as_text(channel.get("user_id")),
            user_login=as_text(channel.get("slug")),
            user_name=as_text(as_dict(channel.get("user")).get("username")),
            title=as_text(livestream.get("session_title")),
            description=as_text(livestream.get("session_title")),
            created_at=created_at,
            published_at=created_at,
            url=as_text(payload.get("source")),
            thumbnail_url=as_text(livestream.get("thumbnail")),
            viewable=as_text(payload.get("status")),
            view_count=as_int(payload.get("views")),
            language=UNKNOWN,
            video_type="archive",
            duration=as_int(livestream.get("duration")) // 1000,
            category=category,
        )

    def get_channel(self, channel_name: str) -> ChannelInfo:
        channels = as_list(self._get_object("channels", params={"slug": channel_name}).get("data"))
        if not channels:
            raise NotFound(f"channel not found: {channel_name}")
        channel = as_dict(channels[0])

        users = as_list(
            self._get_object(
                "users",
                params={"id": as_text(channel.get("broadcaster_user_id"))},
            ).get("data")
        )
        if not users:
            raise NotFound(f"user not found: {channel_name}")
        user = as_dict(users[0])

        # The public API has no description, broadcaster type, offline image or creation date.
        return ChannelInfo(
            channel_id=as_text(user.get("user_id")),
            login=as_text(user.get("name")),
            display_name=as_text(channel.get("slug")),
            channel_type="kick",
            broadcaster_type=UNKNOWN,
            description=UNKNOWN,
            profile_image_url=as_text(user.get("profile_picture")),
            offline_image_url=as_text(user.get("profile_picture")),
            view_count=as_int(as_dict(channel.get("stream")).get("viewer_count")),
            created_at=datetime.now(UTC),
        )

    def get_live_stream(self, channel_name: str) -> LiveStreamInfo:
        channel = self.get_channel(channel_name)
        streams = as_list(
            self._get_object(
                "livestreams",
                params={"broadcaster_user_id": channel.channel_id},
            ).get("data")
        )
        if not streams:
            raise NoStreamsFound(f"no live stream found for channel: {channel_name}")
        stream = as_dict(streams[0])
        chat_room = self._get_object(
            f"channels/{channel.login}/chatroom",
            base_url=KICK_PRIVATE_API_V2_URL,
        )
        category = as_dict(stream.get("category"))

        return LiveStreamInfo(
            stream_id=as_text(stream.get("channel_id")),
            user_id=as_text(stream.get("broadcaster_user_id")),
            chat_room_id=as_text(chat_room.get("id")),
            user_login=channel.login,
            user_name=channel.display_name,
            game_id=as_text(category.get("id")),
            game_name=as_text(category.get("name")),
            stream_type="live",
            title=as_text(stream.get("stream_title")),
            viewer_count=as_int(stream.get("viewer_count")),
            started_at=parse_timestamp(stream.get("started_at"), field_name="started_at"),
            language=as_text(stream.get("language")),
            thumbnail_url=as_text(stream.get("thumbnail")),
        )

    def download_vod_chat(
        self,
        video_id: str,
        *,
        start_time: datetime,
        end_time: datetime,
        output_path: Path,
    ) -> int:
        """`video_id` is the chat room id for Kick live archives."""

        def fetch_page(cursor: str) -> ChatPage:
            payload = self._get_object(
                f"chat/{video_id}/history",
                params={"start_time": cursor},
                base_url=KICK_PRIVATE_API_URL,
            )
            data = as_dict(payload.get("data"))
            return ChatPage(
                messages=[normalize_chat_message(as_dict(item)) for item in as_list(data.get("messages"))],
                cursor=as_text(data.get("cursor")),
            )

        exporter = WindowedChatExporter(fetch_page, page_delay_seconds=self._chat_page_delay_seconds)
        return exporter.export(start_time=start_time, end_time=end_time, output_path=output_path)

    def _get_object(
        self,
        path: str,
        *,
        params: dict[str, str] | None = None,
        base_url: str | None = None,
    ) -> dict[str, Any]:
        raw = self._executor.execute("GET", path, params, base_url=base_url)
        return decode_json_object(raw, context=f"kick {path}")


def normalize_chat_message(message: dict[str, Any]) -> dict[str, object]:
    sender = as_dict(message.get("sender"))
    identity = as_dict(sender.get("identity"))
    badges = [
        {
            "type": as_text(as_dict(badge).get("type")),
            "text": as_text(as_dict(badge).get("text")),
            "count": as_int(as_dict(badge).get("count")),
        }
        for badge in as_list(identity.get("badges"))
    ]
    return {
        "id": as_text(message.get("id")),
        "chat_id": as_int(message.get("chat_id")),
        "user_id": as_int(message.get("user_id")),
        "content": as_text(message.get("content")),
        "type": as_text(message.get("type")),
        "metadata": as_text(message.get("metadata")),
        "sender": {
            "id": as_int(sender.get("id")),
            "slug": as_text(sender.get("slug")),
            "username": as_text(sender.get("username")),
            "identity": {"color": as_text(identity.get("color")), "badges": badges},
        },
        "created_at": as_text(message.get("created_at")),
    }
