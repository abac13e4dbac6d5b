from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from backend.archiver.deadline import Deadline, DeadlineExceeded, bind_deadline
from backend.archiver.services.media_processor import (
    MediaProcessingError,
    MediaToolMissing,
    SubprocessMediaProcessor,
)


def _script(tmp_path: Path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(0o755)
    return str(path)


def test_cancelled_deadline_stops_running_download(tmp_path: Path) -> None:
    streamlink = _script(tmp_path, "slow-streamlink", "exec sleep 30")
    processor = SubprocessMediaProcessor(
        streamlink_bin=streamlink,
        poll_interval_seconds=0.05,
        terminate_grace_seconds=2.0,
    )
    job_deadline = Deadline.after(60)
    timer = threading.Timer(0.2, job_deadline.cancel)
    started = time.monotonic()
    timer.start()
    try:
        with bind_deadline(job_deadline), pytest.raises(DeadlineExceeded):
            processor.download_video(
                source_url="https://twitch.tv/videos/1",
                output_path=tmp_path / "out" / "video.mp4",
                quality="best",
            )
    finally:
        timer.cancel()

    assert time.monotonic() - started < 10


def test_expired_deadline_stops_running_conversion(tmp_path: Path) -> None:
    ffmpeg = _script(tmp_path, "slow-ffmpeg", "exec sleep 30")
    processor = SubprocessMediaProcessor(ffmpeg_bin=ffmpeg, poll_interval_seconds=0.05)
    started = time.monotonic()

    with bind_deadline(Deadline.after(0.3)), pytest.raises(DeadlineExceeded):
        processor.convert_video(input_path=tmp_path / "in.mp4", output_path=tmp_path / "out.mp4")

    assert time.monotonic() - started < 10


def test_failed_command_reports_stderr_tail(tmp_path: Path) -> None:
    ffmpeg = _script(tmp_path, "broken-ffmpeg", 'echo "codec exploded" >&2\nexit 3')
    processor = SubprocessMediaProcessor(ffmpeg_bin=ffmpeg)

    with pytest.raises(MediaProcessingError, match="exited with status 3: codec exploded"):
        processor.convert_video(input_path=tmp_path / "in.mp4", output_path=tmp_path / "out.mp4")


def test_missing_tool_is_not_retryable(tmp_path: Path) -> None:
    processor = SubprocessMediaProcessor(ffmpeg_bin=str(tmp_path / "no-such-ffmpeg"))

    with pytest.raises(MediaToolMissing) as excinfo:
        processor.convert_video(input_path=tmp_path / "in.mp4", output_path=tmp_path / "out.mp4")

    assert excinfo.value.retryable is False


def test_successful_command_runs_without_deadline(tmp_path: Path) -> None:
    ffmpeg = _script(tmp_path, "quick-ffmpeg", 'echo "frame=1"')
    processor = SubprocessMediaProcessor(ffmpeg_bin=ffmpeg)

    processor.convert_video(input_path=tmp_path / "in.mp4", output_path=tmp_path / "out.mp4")
