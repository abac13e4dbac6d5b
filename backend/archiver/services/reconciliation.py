from __future__ import annotations

import logging
from dataclasses import dataclass

from backend.archiver import deadline
from backend.archiver.deadline import DeadlineExceeded
from backend.archiver.models.platform_contracts import VIDEO_TYPE_ARCHIVE, MutedSegment
from backend.archiver.platforms.base import PlatformSource
from backend.archiver.platforms.errors import NotFound, PlatformError
from backend.archiver.repositories.archive_store import (
    ArchiveStore,
    ChannelRecord,
    MutedSegmentRecord,
    VideoRecord,
)

LOGGER = logging.getLogger("vod_archiver.reconciliation")

DEFAULT_BACKFILL_DELAY_SECONDS = 0.25


@dataclass(frozen=True)
class BackfillResult:
    videos_checked: int
    chapters_saved: int
    muted_segments_saved: int
    failures: int


def clip_muted_segments(
    segments: tuple[MutedSegment, ...] | list[MutedSegment],
    video_duration: int,
) -> list[MutedSegmentRecord]:
    """Convert offset/duration pairs to start/end, never running past the video.

    Segments that begin at or after the end of the video are dropped.
    """
    return [
        MutedSegmentRecord(
            start=segment.offset,
            end=min(segment.offset + segment.duration, video_duration),
        )
        for segment in segments
        if segment.offset < video_duration
    ]


def backfill_chapters_and_muted_segments(
    store: ArchiveStore,
    platform: PlatformSource,
    *,
    delay_seconds: float = DEFAULT_BACKFILL_DELAY_SECONDS,
) -> BackfillResult:
    """Fill in chapters and muted segments for archived videos that have none yet.

    Existing rows are never touched, so running this repeatedly converges and then
    becomes a no-op. A failing video is logged and the batch moves on.
    """
    videos = store.list_videos_for_backfill(platform.name)
    chapters_saved = 0
    muted_saved = 0
    failures = 0

    for index, video in enumerate(videos):
        if index > 0:
            deadline.sleep(delay_seconds)
        assert video.ext_id is not None
        try:
            info = platform.get_video(video.ext_id, with_chapters=True, with_muted_segments=True)

            if info.chapters and not store.list_chapters(video.video_id):
                chapters_saved += store.add_chapters(video.video_id, info.chapters)

            if info.muted_segments and not store.list_muted_segments(video.video_id):
                muted_saved += store.add_muted_segments(
                    video.video_id,
                    clip_muted_segments(info.muted_segments, info.duration),
                )
        except DeadlineExceeded:
            raise
        except (PlatformError, OSError) as exc:
            failures += 1
            LOGGER.warning(
                "chapter backfill failed video_id=%s ext_id=%s error=%s",
                video.video_id,
                video.ext_id,
                exc,
            )

    LOGGER.info(
        "chapter backfill finished videos=%s chapters=%s muted_segments=%s failures=%s",
        len(videos),
        chapters_saved,
        muted_saved,
        failures,
    )
    return BackfillResult(
        videos_checked=len(videos),
        chapters_saved=chapters_saved,
        muted_segments_saved=muted_saved,
        failures=failures,
    )


def reconcile_stream_video_ids(
    store: ArchiveStore,
    platform: PlatformSource,
    *,
    video_id: str | None = None,
) -> int:
    """Point locally recorded live streams at the archive video the platform published.

    With `video_id` only that video is reconciled, otherwise every live video of every
    channel on the platform. Returns the number of videos updated.
    """
    updated = 0
    for channel, live_videos in _reconcile_targets(store, platform, video_id):
        if not live_videos:
            continue

        platform_videos = platform.get_videos(channel.ext_id, VIDEO_TYPE_ARCHIVE)
        for video in live_videos:
            for candidate in platform_videos:
                if candidate.stream_id != video.ext_stream_id:
                    continue
                if video.ext_id != candidate.video_id:
                    store.set_video_ext_id(video.video_id, candidate.video_id)
                    updated += 1
                    LOGGER.info(
                        "stream video id reconciled video_id=%s stream_id=%s ext_id=%s",
                        video.video_id,
                        video.ext_stream_id,
                        candidate.video_id,
                    )
                break
    return updated


def _reconcile_targets(
    store: ArchiveStore,
    platform: PlatformSource,
    video_id: str | None,
) -> list[tuple[ChannelRecord, list[VideoRecord]]]:
    if video_id is None:
        return [
            (channel, store.list_live_videos_with_stream_id(channel.channel_id))
            for channel in store.list_channels(platform.name)
        ]
    video = store.get_video(video_id)
    if video is None:
        raise NotFound(f"video not found: {video_id}")
    if video.video_type != "live" or not video.ext_stream_id:
        LOGGER.debug("video has no live stream to reconcile video_id=%s", video_id)
        return []
    channel = store.get_channel(video.channel_id)
    if channel is None:
        raise NotFound(f"channel not found for video: {video_id}")
    return [(channel, [video])]
