from __future__ import annotations

import dataclasses
import json
import logging
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Any

from backend.archiver.config import AppSettings
from backend.archiver.models.job_contracts import (
    QUEUE_CHAT_DOWNLOAD,
    QUEUE_CHAT_RENDER,
    QUEUE_DEFAULT,
    QUEUE_VIDEO_DOWNLOAD,
    QUEUE_VIDEO_POSTPROCESS,
    JobDescriptor,
    JobHandler,
    JobInstance,
    PeriodicJobRule,
)
from backend.archiver.platforms.errors import CapabilityNotImplemented, NotFound
from backend.archiver.repositories.archive_store import ChannelRecord, VideoRecord
from backend.archiver.repositories.common import utc_now
from backend.archiver.services.job_context import JobContext
from backend.archiver.services.job_registry import JobRegistry
from backend.archiver.services.reconciliation import (
    backfill_chapters_and_muted_segments,
    reconcile_stream_video_ids,
)

LOGGER = logging.getLogger("vod_archiver.archive_tasks")

KIND_WATCHDOG = "archive-watchdog"
KIND_CREATE_FOLDER = "task_vod_create_folder"
KIND_SAVE_INFO = "task_vod_save_info"
KIND_DOWNLOAD_THUMBNAIL = "task_vod_download_thumbnail"
KIND_VIDEO_DOWNLOAD = "task_video_download"
KIND_VIDEO_CONVERT = "task_video_convert"
KIND_VIDEO_MOVE = "task_video_move"
KIND_CHAT_DOWNLOAD = "task_chat_download"
KIND_CHAT_RENDER = "task_chat_render"
KIND_CHAT_MOVE = "task_chat_move"
KIND_CHECK_NEW_VIDEOS = "check_channels_for_new_videos"
KIND_CHECK_LIVESTREAMS = "check_channels_for_livestreams"
KIND_SAVE_CHAPTERS = "save_video_chapters"
KIND_UPDATE_STREAM_VIDEO_ID = "update_stream_video_id"
KIND_AUTHENTICATE = "authenticate_platform"
KIND_IMPORT_CATEGORIES = "import_categories"

THUMBNAIL_WIDTH = "1920"
THUMBNAIL_HEIGHT = "1080"


# Pipeline stages.


def create_folder(context: JobContext, job: JobInstance) -> None:
    store = context.require_store()
    video, channel = _load_video(context, job)
    folder = video_folder(context.settings, channel, video)
    folder.mkdir(parents=True, exist_ok=True)
    store.set_video_paths(video.video_id, folder_path=str(folder))
    store.set_video_status(video.video_id, "processing")
    _chain(context, job, KIND_SAVE_INFO)


def save_info(context: JobContext, job: JobInstance) -> None:
    store = context.require_store()
    video, channel = _load_video(context, job)
    folder = video_folder(context.settings, channel, video)

    if video.ext_id and video.video_type != "live":
        info = context.require_platform().get_video(video.ext_id)
        payload: dict[str, Any] = dataclasses.asdict(info)
    else:
        payload = dataclasses.asdict(video)

    info_path = folder / f"{_file_stem(video)}-info.json"
    info_path.parent.mkdir(parents=True, exist_ok=True)
    info_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    store.set_video_paths(video.video_id, info_path=str(info_path))
    _chain(context, job, KIND_DOWNLOAD_THUMBNAIL)


def download_thumbnail(context: JobContext, job: JobInstance) -> None:
    store = context.require_store()
    platform = context.require_platform()
    video, channel = _load_video(context, job)

    if job.args.get("live"):
        thumbnail_url = platform.get_live_stream(channel.name).thumbnail_url
    elif video.ext_id:
        thumbnail_url = platform.get_video(video.ext_id).thumbnail_url
    else:
        thumbnail_url = ""

    if thumbnail_url:
        thumbnail_path = video_folder(context.settings, channel, video) / f"{_file_stem(video)}-thumbnail.jpg"
        context.require_media().download_file(_sized_thumbnail_url(thumbnail_url), thumbnail_path)
        store.set_video_paths(video.video_id, thumbnail_path=str(thumbnail_path))
    else:
        LOGGER.warning("no thumbnail available video_id=%s", video.video_id)

    next_kinds = [KIND_VIDEO_DOWNLOAD]
    # Live chat can only be exported once the stream has ended.
    if _wants_chat(job) and not job.args.get("live"):
        next_kinds.append(KIND_CHAT_DOWNLOAD)
    _chain(context, job, *next_kinds)


def video_download(context: JobContext, job: JobInstance) -> None:
    video, channel = _load_video(context, job)
    context.require_media().download_video(
        source_url=_source_url(context, channel, video, live=bool(job.args.get("live"))),
        output_path=_temp_path(context.settings, video, ".ts"),
        quality=context.settings.video_quality,
    )
    next_kinds = [KIND_VIDEO_CONVERT]
    if _wants_chat(job) and job.args.get("live"):
        next_kinds.append(KIND_CHAT_DOWNLOAD)
    _chain(context, job, *next_kinds)


def video_convert(context: JobContext, job: JobInstance) -> None:
    video, _ = _load_video(context, job)
    context.require_media().convert_video(
        input_path=_temp_path(context.settings, video, ".ts"),
        output_path=_temp_path(context.settings, video, ".mp4"),
    )
    _chain(context, job, KIND_VIDEO_MOVE)


def video_move(context: JobContext, job: JobInstance) -> None:
    store = context.require_store()
    video, channel = _load_video(context, job)
    destination = video_folder(context.settings, channel, video) / f"{_file_stem(video)}-video.mp4"
    _move(_temp_path(context.settings, video, ".mp4"), destination)
    _temp_path(context.settings, video, ".ts").unlink(missing_ok=True)
    store.set_video_paths(video.video_id, video_path=str(destination))
    store.set_video_status(video.video_id, "archived")
    if job.args.get("live"):
        _chain(context, job, KIND_UPDATE_STREAM_VIDEO_ID)


def chat_download(context: JobContext, job: JobInstance) -> None:
    store = context.require_store()
    platform = context.require_platform()
    video, _ = _load_video(context, job)
    output_path = _temp_path(context.settings, video, "-chat.json")
    output_path.parent.mkdir(parents=True, exist_ok=True)

    start_time = video.streamed_at
    end_time = utc_now() if job.args.get("live") else start_time + timedelta(seconds=video.duration)
    chat_source_id = str(job.args.get("chat_room_id") or video.ext_id or "")
    try:
        if not chat_source_id:
            raise CapabilityNotImplemented(platform.name, "download_vod_chat")
        count = platform.download_vod_chat(
            chat_source_id,
            start_time=start_time,
            end_time=end_time,
            output_path=output_path,
        )
        LOGGER.info("chat exported video_id=%s messages=%s", video.video_id, count)
    except CapabilityNotImplemented:
        if not video.ext_id:
            LOGGER.warning("no chat source for video yet; skipping chat video_id=%s", video.video_id)
            return
        context.require_media().download_chat(video_id=video.ext_id, output_path=output_path)

    store.set_video_paths(video.video_id, chat_path=str(output_path))
    _chain(context, job, KIND_CHAT_RENDER)


def chat_render(context: JobContext, job: JobInstance) -> None:
    video, _ = _load_video(context, job)
    context.require_media().render_chat(
        chat_path=_temp_path(context.settings, video, "-chat.json"),
        output_path=_temp_path(context.settings, video, "-chat.mp4"),
    )
    _chain(context, job, KIND_CHAT_MOVE)


def chat_move(context: JobContext, job: JobInstance) -> None:
    store = context.require_store()
    video, channel = _load_video(context, job)
    folder = video_folder(context.settings, channel, video)
    stem = _file_stem(video)
    chat_json = folder / f"{stem}-chat.json"
    chat_video = folder / f"{stem}-chat.mp4"
    _move(_temp_path(context.settings, video, "-chat.json"), chat_json)
    _move(_temp_path(context.settings, video, "-chat.mp4"), chat_video)
    store.set_video_paths(video.video_id, chat_path=str(chat_json), chat_video_path=str(chat_video))


# Recurring jobs.


def watchdog(context: JobContext, job: JobInstance) -> None:
    jobs = context.require_jobs()
    now = utc_now()
    stale_before = now - timedelta(seconds=context.settings.watchdog_stale_after_seconds)
    for stale in jobs.list_stale_running(stale_before):
        if stale.job_id == job.job_id:
            continue
        if stale.attempt < stale.max_attempts:
            jobs.schedule_retry(stale.job_id, error="worker heartbeat lost", available_at=now)
            LOGGER.warning("stale job rescheduled kind=%s job_id=%s", stale.kind, stale.job_id)
        else:
            jobs.mark_discarded(stale.job_id, error="worker heartbeat lost")
            LOGGER.error("stale job discarded kind=%s job_id=%s", stale.kind, stale.job_id)


def check_channels_for_new_videos(context: JobContext, job: JobInstance) -> None:
    started = context.require_live_service().check_vod_watched_channels()
    LOGGER.info("new video check finished started=%s", len(started))


def check_channels_for_livestreams(context: JobContext, job: JobInstance) -> None:
    started = context.require_live_service().check_live_channels()
    LOGGER.info("live check finished started=%s", len(started))


def save_video_chapters(context: JobContext, job: JobInstance) -> None:
    backfill_chapters_and_muted_segments(
        context.require_store(),
        context.require_platform(),
        delay_seconds=context.settings.backfill_delay_seconds,
    )


def update_stream_video_id(context: JobContext, job: JobInstance) -> None:
    # Chained after a live archive with its video_id; the periodic run covers every channel.
    video_id = job.args.get("video_id")
    updated = reconcile_stream_video_ids(
        context.require_store(),
        context.require_platform(),
        video_id=video_id if isinstance(video_id, str) and video_id else None,
    )
    LOGGER.info("stream video ids reconciled video_id=%s updated=%s", video_id, updated)


def authenticate_platform(context: JobContext, job: JobInstance) -> None:
    context.require_platform().authenticate()


def import_categories(context: JobContext, job: JobInstance) -> None:
    platform = context.require_platform()
    categories = platform.get_categories()
    saved = context.require_store().upsert_categories(platform.name, categories)
    LOGGER.info("categories imported platform=%s count=%s", platform.name, saved)


_DEFAULT_DESCRIPTORS: tuple[tuple[str, JobHandler, str, int, timedelta], ...] = (
    (KIND_WATCHDOG, watchdog, QUEUE_DEFAULT, 1, timedelta(seconds=45)),
    (KIND_CREATE_FOLDER, create_folder, QUEUE_DEFAULT, 5, timedelta(minutes=1)),
    (KIND_SAVE_INFO, save_info, QUEUE_DEFAULT, 5, timedelta(minutes=1)),
    (KIND_DOWNLOAD_THUMBNAIL, download_thumbnail, QUEUE_DEFAULT, 5, timedelta(minutes=1)),
    (KIND_VIDEO_DOWNLOAD, video_download, QUEUE_VIDEO_DOWNLOAD, 5, timedelta(hours=49)),
    (KIND_VIDEO_CONVERT, video_convert, QUEUE_VIDEO_POSTPROCESS, 5, timedelta(hours=24)),
    (KIND_VIDEO_MOVE, video_move, QUEUE_DEFAULT, 5, timedelta(hours=24)),
    (KIND_CHAT_DOWNLOAD, chat_download, QUEUE_CHAT_DOWNLOAD, 5, timedelta(hours=49)),
    (KIND_CHAT_RENDER, chat_render, QUEUE_CHAT_RENDER, 5, timedelta(hours=49)),
    (KIND_CHAT_MOVE, chat_move, QUEUE_DEFAULT, 5, timedelta(hours=49)),
    (KIND_CHECK_NEW_VIDEOS, check_channels_for_new_videos, QUEUE_DEFAULT, 5, timedelta(minutes=10)),
    (KIND_CHECK_LIVESTREAMS, check_channels_for_livestreams, QUEUE_DEFAULT, 5, timedelta(minutes=10)),
    (KIND_SAVE_CHAPTERS, save_video_chapters, QUEUE_DEFAULT, 5, timedelta(minutes=10)),
    (KIND_UPDATE_STREAM_VIDEO_ID, update_stream_video_id, QUEUE_DEFAULT, 2, timedelta(minutes=10)),
    (KIND_AUTHENTICATE, authenticate_platform, QUEUE_DEFAULT, 5, timedelta(minutes=1)),
    (KIND_IMPORT_CATEGORIES, import_categories, QUEUE_DEFAULT, 5, timedelta(minutes=1)),
)


def default_job_descriptors() -> list[JobDescriptor]:
    return [
        JobDescriptor(kind=kind, handler=handler, queue=queue, max_attempts=max_attempts, timeout=timeout)
        for kind, handler, queue, max_attempts, timeout in _DEFAULT_DESCRIPTORS
    ]


def build_default_registry() -> JobRegistry:
    return JobRegistry(default_job_descriptors())


def default_periodic_rules(settings: AppSettings) -> list[PeriodicJobRule]:
    daily = timedelta(days=1)
    return [
        PeriodicJobRule(kind=KIND_WATCHDOG, interval=timedelta(minutes=5), run_on_start=True),
        PeriodicJobRule(
            kind=KIND_CHECK_LIVESTREAMS,
            interval=timedelta(seconds=settings.live_check_interval_seconds),
        ),
        PeriodicJobRule(
            kind=KIND_CHECK_NEW_VIDEOS,
            interval=timedelta(minutes=settings.video_check_interval_minutes),
        ),
        PeriodicJobRule(kind=KIND_AUTHENTICATE, interval=daily, run_on_start=True),
        PeriodicJobRule(kind=KIND_IMPORT_CATEGORIES, interval=daily, run_on_start=True),
        PeriodicJobRule(kind=KIND_SAVE_CHAPTERS, interval=daily),
        PeriodicJobRule(kind=KIND_UPDATE_STREAM_VIDEO_ID, interval=daily),
    ]


def video_folder(settings: AppSettings, channel: ChannelRecord, video: VideoRecord) -> Path:
    return settings.videos_dir / channel.name / _file_stem(video)


def _file_stem(video: VideoRecord) -> str:
    # Live folders keep the stream id once the published video id is reconciled.
    if video.video_type == "live":
        external = video.ext_stream_id or video.ext_id or "local"
    else:
        external = video.ext_id or video.ext_stream_id or "local"
    return f"{external}_{video.video_id}"


def _temp_path(settings: AppSettings, video: VideoRecord, suffix: str) -> Path:
    return settings.temp_dir / f"{video.video_id}{suffix}"


def _load_video(context: JobContext, job: JobInstance) -> tuple[VideoRecord, ChannelRecord]:
    store = context.require_store()
    video_id = job.args.get("video_id")
    if not isinstance(video_id, str) or not video_id:
        raise NotFound(f"job {job.job_id} has no video_id argument")
    video = store.get_video(video_id)
    if video is None:
        raise NotFound(f"video not found: {video_id}")
    channel = store.get_channel(video.channel_id)
    if channel is None:
        raise NotFound(f"channel not found for video: {video_id}")
    return video, channel


def _chain(context: JobContext, job: JobInstance, *kinds: str) -> None:
    if not job.args.get("continue"):
        return
    registry = context.require_registry()
    jobs = context.require_jobs()
    for kind in kinds:
        registry.enqueue(jobs, kind, dict(job.args))


def _wants_chat(job: JobInstance) -> bool:
    return bool(job.args.get("download_chat", True))


def _source_url(context: JobContext, channel: ChannelRecord, video: VideoRecord, *, live: bool) -> str:
    platform = context.require_platform()
    if platform.name == "twitch":
        if live:
            return f"https://www.twitch.tv/{channel.name}"
        return f"https://www.twitch.tv/videos/{video.ext_id}"
    if live:
        return f"https://kick.com/{channel.name}"
    if not video.ext_id:
        raise NotFound(f"video has no platform id: {video.video_id}")
    return platform.get_video(video.ext_id).url


def _sized_thumbnail_url(url: str) -> str:
    return (
        url.replace("%{width}", THUMBNAIL_WIDTH)
        .replace("%{height}", THUMBNAIL_HEIGHT)
        .replace("{width}", THUMBNAIL_WIDTH)
        .replace("{height}", THUMBNAIL_HEIGHT)
    )


def _move(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(destination))
