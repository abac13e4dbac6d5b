"""Log routing for the archiver.

Everything under the ``vod_archiver`` logger goes to the console and to a JSON lines
file. Output captured from media tools (streamlink, ffmpeg, the chat downloader) is
too noisy for either, so it is written to one plain text file per video and pipeline
stage instead, keyed by the ``video_id`` and ``job_kind`` bound by the worker pool.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
from structlog.contextvars import get_contextvars
from structlog.typing import EventDict, Processor

from backend.archiver.config import AppSettings

ROOT_LOGGER_NAME = "vod_archiver"
MEDIA_LOGGER_NAME = "vod_archiver.media"
TELEMETRY_LOGGER_NAME = "vod_archiver.telemetry"
LOG_FILE_NAME = "vod-archiver.log"
TELEMETRY_LOG_FILE_NAME = "vod-archiver-telemetry.log"
MEDIA_LOG_DIR_NAME = "media"

_MEDIA_LINE_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class ToolOutputFilter(logging.Filter):
    """Drops per-line media tool output from shared handlers."""

    def filter(self, record: logging.LogRecord) -> bool:
        return not (record.name == MEDIA_LOGGER_NAME and record.levelno < logging.INFO)


class VideoLogHandler(logging.Handler):
    """Appends media records to ``<directory>/<video_id>-<stage>.log``.

    Records logged outside a job that carries a video are ignored.
    """

    def __init__(self, directory: Path) -> None:
        super().__init__(level=logging.DEBUG)
        self.directory = directory
        self.setFormatter(logging.Formatter(_MEDIA_LINE_FORMAT))

    def path_for(self, context: Mapping[str, Any]) -> Path | None:
        video_id = context.get("video_id")
        if not isinstance(video_id, str) or not video_id:
            return None
        stage = str(context.get("job_kind") or "media").removeprefix("task_").replace("_", "-")
        return self.directory / f"{video_id}-{stage}.log"

    def emit(self, record: logging.LogRecord) -> None:
        path = self.path_for(get_contextvars())
        if path is None:
            return
        try:
            line = self.format(record)
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as stream:
                stream.write(line + "\n")
        except Exception:
            self.handleError(record)


def configure_application_logging(settings: AppSettings) -> Path:
    return configure_logging(log_dir=settings.log_dir, console_level=settings.log_level)


def configure_logging(*, log_dir: Path, console_level: str) -> Path:
    """Install the archiver handlers and return the path of the JSON log file.

    Safe to call more than once; earlier handlers are closed and replaced.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME
    telemetry_file = log_dir / TELEMETRY_LOG_FILE_NAME
    media_dir = log_dir / MEDIA_LOG_DIR_NAME

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    tool_output = ToolOutputFilter()
    console = logging.StreamHandler(stream=sys.stdout)
    console.setLevel(_level(console_level))
    console.setFormatter(_console_formatter(colors=_is_terminal(sys.stdout)))
    console.addFilter(tool_output)

    json_file = logging.FileHandler(log_file, encoding="utf-8")
    json_file.setLevel(logging.DEBUG)
    json_file.setFormatter(_json_formatter())
    json_file.addFilter(tool_output)

    _install(ROOT_LOGGER_NAME, logging.DEBUG, console, json_file, propagate=False)
    _install(MEDIA_LOGGER_NAME, logging.DEBUG, VideoLogHandler(media_dir), propagate=True)

    telemetry = logging.FileHandler(telemetry_file, encoding="utf-8")
    telemetry.setFormatter(_json_formatter())
    _install(TELEMETRY_LOGGER_NAME, logging.INFO, telemetry, propagate=False)

    logging.getLogger(ROOT_LOGGER_NAME).info(
        "logging configured console_level=%s path=%s media_dir=%s telemetry_path=%s",
        console_level.upper(),
        log_file,
        media_dir,
        telemetry_file,
    )
    return log_file


def _install(name: str, level: int, *handlers: logging.Handler, propagate: bool) -> None:
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.propagate = propagate
    for handler in handlers:
        logger.addHandler(handler)


def _level(raw_level: str) -> int:
    resolved = logging.getLevelName(raw_level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _console_formatter(*, colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
    )


def _json_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[
            _add_thread,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
    )


def _add_thread(_logger: Any, _method_name: str, event_dict: EventDict) -> EventDict:
    # Worker threads are named after their queue.
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["thread"] = record.threadName
    return event_dict


def _is_terminal(stream: Any) -> bool:
    try:
        return bool(stream.isatty())
    except (AttributeError, OSError, ValueError):
        return False
