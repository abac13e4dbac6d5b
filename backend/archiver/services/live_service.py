from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import cast

from backend.archiver.models.platform_contracts import Chapter, LiveStreamInfo, VideoInfo, VideoType
from backend.archiver.platforms.base import PlatformSource
from backend.archiver.platforms.errors import CapabilityNotImplemented, NoStreamsFound, PlatformError
from backend.archiver.repositories.archive_store import ArchiveStore, ChannelRecord, VideoRecord
from backend.archiver.repositories.common import utc_now
from backend.archiver.repositories.jobs_repository import JobsRepository
from backend.archiver.services.job_registry import JobRegistry

LOGGER = logging.getLogger("vod_archiver.live_service")

PIPELINE_START_KIND = "task_vod_create_folder"
GAME_CHANGE_CHAPTER = "GAME_CHANGE"


class LiveService:
    """Watches channels and starts archive pipelines for new streams and videos."""

    def __init__(
        self,
        *,
        platform: PlatformSource,
        store: ArchiveStore,
        jobs: JobsRepository,
        registry: JobRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._platform = platform
        self._store = store
        self._jobs = jobs
        self._registry = registry
        self._clock = clock

    def check_live_channels(self) -> list[str]:
        channels = self._store.list_live_watched_channels(self._platform.name)
        if not channels:
            return []

        streams, failed = self._fetch_live_streams([channel.name for channel in channels])
        by_login = {stream.user_login.lower(): stream for stream in streams}
        started: list[str] = []
        for channel in channels:
            stream = by_login.get(channel.name.lower())
            if stream is None:
                continue
            existing = self._store.find_live_video_by_stream_id(channel.channel_id, stream.stream_id)
            if existing is not None:
                # Chapters follow the live category even when restrictions would now reject it.
                self._update_live_chapter(existing, stream)
                LOGGER.debug(
                    "live stream already archiving channel=%s stream_id=%s",
                    channel.name,
                    stream.stream_id,
                )
                continue
            if not self._should_archive_live(channel, stream):
                continue
            video = self.archive_live_stream(channel, stream)
            started.append(video.video_id)

        self._mark_checked([channel for channel in channels if channel.name not in failed])
        return started

    def check_vod_watched_channels(self) -> list[str]:
        channels = self._store.list_vod_watched_channels(self._platform.name)
        started: list[str] = []
        checked: list[ChannelRecord] = []
        failures = 0
        for channel in channels:
            try:
                self._check_channel_videos(channel, started)
            except PlatformError:
                failures += 1
                LOGGER.warning("vod check failed channel=%s", channel.name, exc_info=True)
                continue
            checked.append(channel)
        if failures:
            LOGGER.warning(
                "vod check finished with failures failed=%s total=%s", failures, len(channels)
            )
        self._mark_checked(checked)
        return started

    def _check_channel_videos(self, channel: ChannelRecord, started: list[str]) -> None:
        for video_type in channel.video_types:
            videos = self._platform.get_videos(channel.ext_id, cast(VideoType, video_type))
            for info in videos:
                if not self._should_archive(channel, info):
                    continue
                video = self.archive_video(channel, info)
                started.append(video.video_id)

    def archive_live_stream(self, channel: ChannelRecord, stream: LiveStreamInfo) -> VideoRecord:
        video = self._store.create_video(
            channel_id=channel.channel_id,
            platform=self._platform.name,
            ext_id=None,
            ext_stream_id=stream.stream_id,
            video_type="live",
            title=stream.title,
            streamed_at=stream.started_at,
            views=stream.viewer_count,
        )
        if stream.game_name:
            self._store.add_chapters(
                video.video_id,
                [Chapter(_live_chapter_id(0), GAME_CHANGE_CHAPTER, stream.game_name, 0, 0)],
            )
        self._registry.enqueue(
            self._jobs,
            PIPELINE_START_KIND,
            {
                "video_id": video.video_id,
                "continue": True,
                "live": True,
                "chat_room_id": stream.chat_room_id,
                "download_chat": channel.download_chat,
            },
        )
        LOGGER.info(
            "live archive started channel=%s stream_id=%s video_id=%s",
            channel.name,
            stream.stream_id,
            video.video_id,
        )
        return video

    def archive_video(self, channel: ChannelRecord, info: VideoInfo) -> VideoRecord:
        video = self._store.create_video(
            channel_id=channel.channel_id,
            platform=self._platform.name,
            ext_id=info.video_id,
            ext_stream_id=info.stream_id or None,
            video_type=info.video_type,
            title=info.title,
            streamed_at=info.created_at,
            duration=info.duration,
            views=info.view_count,
        )
        self._registry.enqueue(
            self._jobs,
            PIPELINE_START_KIND,
            {
                "video_id": video.video_id,
                "continue": True,
                "live": False,
                "download_chat": channel.download_chat,
            },
        )
        LOGGER.info(
            "video archive started channel=%s ext_id=%s video_id=%s",
            channel.name,
            info.video_id,
            video.video_id,
        )
        return video

    def _fetch_live_streams(
        self, channel_names: Sequence[str]
    ) -> tuple[list[LiveStreamInfo], set[str]]:
        """Live streams for `channel_names`, plus the names whose lookup failed."""
        try:
            return self._platform.get_live_streams(channel_names), set()
        except NoStreamsFound:
            return [], set()
        except CapabilityNotImplemented:
            pass

        streams: list[LiveStreamInfo] = []
        failed: set[str] = set()
        for name in channel_names:
            try:
                streams.append(self._platform.get_live_stream(name))
            except NoStreamsFound:
                continue
            except PlatformError:
                LOGGER.warning("live lookup failed channel=%s", name, exc_info=True)
                failed.add(name)
        return streams, failed

    def _should_archive(self, channel: ChannelRecord, info: VideoInfo) -> bool:
        if self._store.find_video_by_ext_id(self._platform.name, info.video_id) is not None:
            return False
        if self._store.is_video_blocked(info.video_id):
            LOGGER.info("skipping blocked video ext_id=%s channel=%s", info.video_id, channel.name)
            return False
        if channel.max_video_age_days > 0:
            oldest_allowed = self._clock() - timedelta(days=channel.max_video_age_days)
            if info.created_at < oldest_allowed:
                return False
        return self._title_allowed(channel, info.title)

    def _should_archive_live(self, channel: ChannelRecord, stream: LiveStreamInfo) -> bool:
        if not self._title_allowed(channel, stream.title):
            LOGGER.debug("live title rejected channel=%s title=%s", channel.name, stream.title)
            return False
        if channel.apply_categories_to_live and channel.categories:
            allowed = {category.casefold() for category in channel.categories}
            if stream.game_name.casefold() not in allowed:
                LOGGER.info(
                    "live category rejected channel=%s category=%s allowed=%s",
                    channel.name,
                    stream.game_name,
                    ", ".join(channel.categories),
                )
                return False
        return True

    def _title_allowed(self, channel: ChannelRecord, title: str) -> bool:
        if not channel.title_regex:
            return True
        try:
            pattern = re.compile(channel.title_regex, re.IGNORECASE)
        except re.error:
            LOGGER.warning(
                "invalid title regex ignored channel=%s regex=%s",
                channel.name,
                channel.title_regex,
            )
            return True
        return pattern.search(title) is not None

    def _update_live_chapter(self, video: VideoRecord, stream: LiveStreamInfo) -> None:
        chapters = self._store.list_chapters(video.video_id)
        if not chapters or not stream.game_name:
            return
        last = max(chapters, key=lambda chapter: chapter.start)
        if last.title == stream.game_name:
            return
        elapsed = max(last.start, int((self._clock() - video.created_at).total_seconds()))
        self._store.set_chapter_end(video.video_id, last.chapter_id, elapsed)
        chapter_id = _live_chapter_id(len(chapters))
        self._store.add_chapters(
            video.video_id,
            [Chapter(chapter_id, GAME_CHANGE_CHAPTER, stream.game_name, elapsed, 0)],
        )
        LOGGER.info(
            "live chapter started video_id=%s category=%s at=%s",
            video.video_id,
            stream.game_name,
            elapsed,
        )

    def _mark_checked(self, channels: Sequence[ChannelRecord]) -> None:
        checked_at = self._clock()
        for channel in channels:
            self._store.mark_channel_checked(channel.channel_id, checked_at)


def _live_chapter_id(index: int) -> str:
    return f"live-{index}"
