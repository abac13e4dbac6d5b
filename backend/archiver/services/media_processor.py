from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from backend.archiver import deadline
from backend.archiver.deadline import DeadlineExceeded
from backend.archiver.platforms.errors import UnexpectedStatus
from backend.archiver.platforms.executor import CHROME_USER_AGENT, HttpTransport, UrllibTransport

LOGGER = logging.getLogger("vod_archiver.media")

_STDERR_TAIL_LINES = 20


class MediaProcessingError(RuntimeError):
    retryable = True


class MediaToolMissing(MediaProcessingError):
    retryable = False


class MediaProcessor(Protocol):
    def download_file(self, url: str, output_path: Path) -> None:
        ...

    def download_video(self, *, source_url: str, output_path: Path, quality: str) -> None:
        ...

    def convert_video(self, *, input_path: Path, output_path: Path) -> None:
        ...

    def download_chat(self, *, video_id: str, output_path: Path) -> None:
        ...

    def render_chat(self, *, chat_path: Path, output_path: Path) -> None:
        ...


class SubprocessMediaProcessor:
    """Delegates media work to external tools, bounded by the current job deadline."""

    def __init__(
        self,
        *,
        streamlink_bin: str = "streamlink",
        ffmpeg_bin: str = "ffmpeg",
        chat_downloader_bin: str = "TwitchDownloaderCLI",
        transport: HttpTransport | None = None,
        http_timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 0.5,
        terminate_grace_seconds: float = 10.0,
    ) -> None:
        self._streamlink_bin = streamlink_bin
        self._ffmpeg_bin = ffmpeg_bin
        self._chat_downloader_bin = chat_downloader_bin
        self._transport: HttpTransport = transport if transport is not None else UrllibTransport()
        self._http_timeout_seconds = http_timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._terminate_grace_seconds = terminate_grace_seconds

    def download_file(self, url: str, output_path: Path) -> None:
        response = self._transport.send(
            method="GET",
            url=url,
            headers={"User-Agent": CHROME_USER_AGENT},
            body=None,
            timeout=deadline.bounded_timeout(self._http_timeout_seconds),
        )
        if not 200 <= response.status < 300:
            raise UnexpectedStatus(status_code=response.status, body=response.body)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(response.body)

    def download_video(self, *, source_url: str, output_path: Path, quality: str) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self._run(
            [
                self._streamlink_bin,
                "--progress=no",
                "--force",
                "--output",
                str(output_path),
                source_url,
                quality,
            ]
        )

    def convert_video(self, *, input_path: Path, output_path: Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self._run(
            [
                self._ffmpeg_bin,
                "-y",
                "-hide_banner",
                "-i",
                str(input_path),
                "-c",
                "copy",
                "-bsf:a",
                "aac_adtstoasc",
                str(output_path),
            ]
        )

    def download_chat(self, *, video_id: str, output_path: Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self._run(
            [
                self._chat_downloader_bin,
                "chatdownload",
                "--id",
                video_id,
                "--embed-images",
                "-o",
                str(output_path),
            ]
        )

    def render_chat(self, *, chat_path: Path, output_path: Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self._run(
            [
                self._chat_downloader_bin,
                "chatrender",
                "-i",
                str(chat_path),
                "-h",
                "1440",
                "-w",
                "340",
                "--framerate",
                "30",
                "--font-size",
                "13",
                "-o",
                str(output_path),
            ]
        )

    def _run(self, command: Sequence[str]) -> None:
        current = deadline.current_deadline()
        if current is not None:
            current.check()
        LOGGER.info("media command started tool=%s", command[0])
        try:
            process = subprocess.Popen(
                list(command),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as exc:
            raise MediaToolMissing(f"media tool not found: {command[0]}") from exc

        # Without a job deadline the command runs to completion.
        poll_timeout = self._poll_interval_seconds if current is not None else None
        while True:
            try:
                stdout, stderr = process.communicate(timeout=poll_timeout)
                break
            except subprocess.TimeoutExpired:
                if current is not None and current.expired():
                    self._stop(process, command[0])
                    raise DeadlineExceeded(
                        f"media command exceeded job deadline: {command[0]}"
                    ) from None

        for line in stdout.splitlines():
            LOGGER.debug("%s: %s", command[0], line)
        if process.returncode != 0:
            stderr_tail = "\n".join(stderr.splitlines()[-_STDERR_TAIL_LINES:])
            raise MediaProcessingError(
                f"{command[0]} exited with status {process.returncode}: {stderr_tail}"
            )
        LOGGER.info("media command finished tool=%s", command[0])

    def _stop(self, process: subprocess.Popen[str], tool: str) -> None:
        LOGGER.warning("stopping media command tool=%s pid=%s", tool, process.pid)
        process.terminate()
        try:
            process.communicate(timeout=self._terminate_grace_seconds)
        except subprocess.TimeoutExpired:
            LOGGER.warning("killing media command tool=%s pid=%s", tool, process.pid)
            process.kill()
            process.wait()
