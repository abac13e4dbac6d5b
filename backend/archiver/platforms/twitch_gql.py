from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from backend.archiver import deadline
from backend.archiver.platforms.base import as_dict, as_int, as_list, as_text, decode_json_object
from backend.archiver.platforms.errors import DecodeFailed, PlatformError, PlatformNetworkError
from backend.archiver.platforms.executor import CHROME_USER_AGENT, HttpTransport

LOGGER = logging.getLogger("vod_archiver.platforms.twitch_gql")

GQL_URL = "https://gql.twitch.tv/gql"
# Public client id used by the twitch.tv web player.
GQL_CLIENT_ID = "kimne78kx3ncx6brgo4mv6wki5h1ko"
GQL_MAX_ATTEMPTS = 3
GQL_RETRY_STEP_SECONDS = 0.3

MUTED_SEGMENTS_OPERATION = "VideoPlayer_MutedSegmentsAlertOverlay"
MUTED_SEGMENTS_HASH = "c36e7400657815f4704e6063d265dff766ed8fc1590361c6d71e4368805e0b49"
CHAPTERS_OPERATION = "VideoPlayer_ChapterSelectButtonVideo"
CHAPTERS_HASH = "8d2793384aac3773beab5e59bd5d6f585aedb923d292800119e03d40cd0f9b41"
PLAYBACK_ACCESS_TOKEN_QUERY = (
    "query PlaybackAccessToken($isLive: Boolean!, $login: String!, $isVod: Boolean!, "
    "$vodID: ID!, $playerType: String!) {\n"
    "streamPlaybackAccessToken(channelName: $login, params: {platform: \"web\", "
    "playerBackend: \"mediaplayer\", playerType: $playerType}) @include(if: $isLive) {\n"
    "value\nsignature\n}\n"
    "videoPlaybackAccessToken(id: $vodID, params: {platform: \"web\", "
    "playerBackend: \"mediaplayer\", playerType: $playerType}) @include(if: $isVod) {\n"
    "value\nsignature\n}\n}"
)


@dataclass(frozen=True)
class GqlVideo:
    broadcast_type: str
    restriction_type: str | None
    game_id: str | None
    game_name: str | None
    title: str
    seek_previews_url: str | None


@dataclass(frozen=True)
class GqlMutedSegment:
    offset: int
    duration: int


@dataclass(frozen=True)
class GqlChapter:
    chapter_id: str
    chapter_type: str
    description: str
    position_milliseconds: int
    duration_milliseconds: int


@dataclass(frozen=True)
class PlaybackAccessToken:
    value: str
    signature: str


class TwitchGqlClient:
    """Side-channel queries against Twitch's web GraphQL endpoint.

    Chapters, muted segments and playback tokens are not exposed by Helix.
    """

    def __init__(
        self,
        *,
        transport: HttpTransport,
        oauth_token: str | None = None,
        max_attempts: int = GQL_MAX_ATTEMPTS,
        retry_step_seconds: float = GQL_RETRY_STEP_SECONDS,
        http_timeout_seconds: float = 30.0,
    ) -> None:
        self._transport = transport
        self._oauth_token = oauth_token.strip() if oauth_token else None
        self._max_attempts = max(1, max_attempts)
        self._retry_step_seconds = max(0.0, retry_step_seconds)
        self._http_timeout_seconds = http_timeout_seconds

    def request(self, payload: dict[str, Any], *, include_auth: bool = True) -> dict[str, Any]:
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers = {
            "Client-ID": GQL_CLIENT_ID,
            "Content-Type": "text/plain;charset=UTF-8",
            "Origin": "https://www.twitch.tv",
            "Referer": "https://www.twitch.tv/",
            "Sec-Fetch-Mode": "cors",
            "Sec-Fetch-Site": "same-site",
            "User-Agent": CHROME_USER_AGENT,
        }
        if include_auth and self._oauth_token:
            headers["Authorization"] = f"OAuth {self._oauth_token}"

        last_error: PlatformError | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                response = self._transport.send(
                    method="POST",
                    url=GQL_URL,
                    headers=headers,
                    body=body,
                    timeout=deadline.bounded_timeout(self._http_timeout_seconds),
                )
            except PlatformNetworkError as exc:
                last_error = exc
            else:
                if response.status >= 500 or response.status == 429:
                    last_error = PlatformError(
                        f"received retryable gql status code: {response.status}"
                    )
                else:
                    return decode_json_object(response.body, context="twitch gql")

            if attempt < self._max_attempts:
                deadline.sleep(attempt * self._retry_step_seconds)

        assert last_error is not None
        raise last_error

    def get_video(self, video_id: str) -> GqlVideo:
        query = (
            f"query{{video(id:{json.dumps(video_id)}){{broadcastType,resourceRestriction{{id,type}},"
            "game{id,name},title,createdAt,seekPreviewsURL}}"
        )
        response = self.request({"query": query})
        video = as_dict(as_dict(response.get("data")).get("video"))
        restriction = as_dict(video.get("resourceRestriction"))
        game = as_dict(video.get("game"))
        return GqlVideo(
            broadcast_type=as_text(video.get("broadcastType")),
            restriction_type=as_text(restriction.get("type")) or None,
            game_id=as_text(game.get("id")) or None,
            game_name=as_text(game.get("name")) or None,
            title=as_text(video.get("title")),
            seek_previews_url=as_text(video.get("seekPreviewsURL")) or None,
        )

    def get_muted_segments(self, video_id: str) -> list[GqlMutedSegment]:
        response = self.request(
            _persisted_query(
                MUTED_SEGMENTS_OPERATION,
                MUTED_SEGMENTS_HASH,
                {"vodID": video_id, "includePrivate": False},
            )
        )
        video = as_dict(as_dict(response.get("data")).get("video"))
        connection = as_dict(as_dict(video.get("muteInfo")).get("mutedSegmentConnection"))
        segments: list[GqlMutedSegment] = []
        for node in as_list(connection.get("nodes")):
            node_dict = as_dict(node)
            segments.append(
                GqlMutedSegment(
                    offset=as_int(node_dict.get("offset")),
                    duration=as_int(node_dict.get("duration")),
                )
            )
        return segments

    def get_chapters(self, video_id: str) -> list[GqlChapter]:
        response = self.request(
            _persisted_query(
                CHAPTERS_OPERATION,
                CHAPTERS_HASH,
                {"videoID": video_id, "includePrivate": False},
            )
        )
        video = as_dict(as_dict(response.get("data")).get("video"))
        chapters: list[GqlChapter] = []
        for edge in as_list(as_dict(video.get("moments")).get("edges")):
            node = as_dict(as_dict(edge).get("node"))
            chapters.append(
                GqlChapter(
                    chapter_id=as_text(node.get("id")),
                    chapter_type=as_text(node.get("type")),
                    description=as_text(node.get("description")),
                    position_milliseconds=as_int(node.get("positionMilliseconds")),
                    duration_milliseconds=as_int(node.get("durationMilliseconds")),
                )
            )
        return chapters

    def get_playback_access_token(self, channel_name: str) -> PlaybackAccessToken:
        payload = {
            "operationName": "PlaybackAccessToken",
            "variables": {
                "isLive": True,
                "login": channel_name,
                "isVod": False,
                "vodID": "",
                "playerType": "site",
            },
            "query": PLAYBACK_ACCESS_TOKEN_QUERY,
        }
        if self._oauth_token:
            try:
                return _parse_playback_access_token(self.request(payload, include_auth=True))
            except PlatformError:
                LOGGER.warning(
                    "playback access token with oauth token failed; retrying anonymously",
                    exc_info=True,
                )
        return _parse_playback_access_token(self.request(payload, include_auth=False))


def _persisted_query(operation: str, sha256: str, variables: dict[str, Any]) -> dict[str, Any]:
    return {
        "operationName": operation,
        "variables": variables,
        "extensions": {"persistedQuery": {"version": 1, "sha256Hash": sha256}},
    }


def _parse_playback_access_token(response: dict[str, Any]) -> PlaybackAccessToken:
    errors = as_list(response.get("errors"))
    if errors:
        message = as_text(as_dict(errors[0]).get("message"), "unknown error")
        raise DecodeFailed(f"gql playback access token error: {message}")
    token = as_dict(as_dict(response.get("data")).get("streamPlaybackAccessToken"))
    value = as_text(token.get("value"))
    signature = as_text(token.get("signature"))
    if not value or not signature:
        raise DecodeFailed("empty playback access token response")
    return PlaybackAccessToken(value=value, signature=signature)
