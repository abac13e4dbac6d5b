from __future__ import annotations

import pytest
from click.testing import CliRunner
from vodctl.cli import main

from backend.archiver.dependencies import get_archive_store, get_jobs_repository
from backend.archiver.models.platform_contracts import ChannelInfo
from backend.archiver.platforms.errors import NotFound

from fakes import FakePlatform


class _MissingChannelPlatform(FakePlatform):
    def get_channel(self, channel_name: str) -> ChannelInfo:
        raise NotFound(f"channel not found: {channel_name}")


def test_kinds_lists_registered_jobs() -> None:
    result = CliRunner().invoke(main, ["kinds"])

    assert result.exit_code == 0
    assert "Job kinds" in result.output
    assert "archive-watchdog" in result.output


def test_enqueue_adds_pending_job() -> None:
    result = CliRunner().invoke(main, ["enqueue", "import_categories"])

    assert result.exit_code == 0, result.output
    assert "Enqueued" in result.output
    jobs = get_jobs_repository().list_jobs()
    assert [(job.kind, job.state) for job in jobs] == [("import_categories", "pending")]


def test_enqueue_passes_json_arguments() -> None:
    result = CliRunner().invoke(main, ["enqueue", "task_vod_save_info", "--args", '{"video_id": "vid_1"}'])

    assert result.exit_code == 0, result.output
    jobs = get_jobs_repository().list_jobs()
    assert jobs[0].args == {"video_id": "vid_1"}
    assert jobs[0].queue == "default"


@pytest.mark.parametrize("raw_args", ["{not json", "[1, 2]"])
def test_enqueue_rejects_bad_arguments(raw_args: str) -> None:
    result = CliRunner().invoke(main, ["enqueue", "import_categories", "--args", raw_args])

    assert result.exit_code == 2
    assert get_jobs_repository().list_jobs() == []


def test_enqueue_unknown_kind_exits_with_error() -> None:
    result = CliRunner().invoke(main, ["enqueue", "does_not_exist"])

    assert result.exit_code == 1
    assert "unknown job kind: does_not_exist" in result.output


def test_jobs_shows_state_counts() -> None:
    runner = CliRunner()
    runner.invoke(main, ["enqueue", "import_categories"])

    result = runner.invoke(main, ["jobs", "--state", "pending"])

    assert result.exit_code == 0, result.output
    assert "Job states" in result.output
    assert "pending: 1" in result.output
    assert "Recent jobs" in result.output


def test_channels_when_nothing_is_watched() -> None:
    result = CliRunner().invoke(main, ["channels"])

    assert result.exit_code == 0
    assert "No channels configured" in result.output


def test_watch_stores_channel(monkeypatch: pytest.MonkeyPatch) -> None:
    platform = FakePlatform()
    monkeypatch.setattr("vodctl.commands.channels.get_platform", lambda: platform)
    runner = CliRunner()

    result = runner.invoke(main, ["watch", "streamer", "--vods", "--no-chat", "--title-regex", "speedrun"])

    assert result.exit_code == 0, result.output
    assert "Watching Streamer" in result.output
    assert platform.calls[0] == "authenticate"
    [channel] = get_archive_store().list_channels()
    assert channel.ext_id == "id-streamer"
    assert channel.watch_vods is True
    assert channel.download_chat is False
    assert channel.title_regex == "speedrun"

    listing = runner.invoke(main, ["channels"])
    assert "streamer (twitch)" in listing.output
    assert "checked never" in listing.output


def test_watch_stores_live_category_restrictions(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("vodctl.commands.channels.get_platform", FakePlatform)
    runner = CliRunner()

    result = runner.invoke(
        main,
        ["watch", "streamer", "--category", "Celeste", "--category", "Tetris", "--apply-categories-to-live"],
    )

    assert result.exit_code == 0, result.output
    [channel] = get_archive_store().list_channels()
    assert channel.categories == ("Celeste", "Tetris")
    assert channel.apply_categories_to_live is True
    listing = runner.invoke(main, ["channels"])
    assert "live-categories:Celeste,Tetris" in listing.output


def test_watch_reports_missing_channel(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("vodctl.commands.channels.get_platform", _MissingChannelPlatform)

    result = CliRunner().invoke(main, ["watch", "nobody"])

    assert result.exit_code == 1
    assert "Could not look up channel nobody" in result.output
    assert get_archive_store().list_channels() == []


def test_worker_drain_with_empty_queue() -> None:
    result = CliRunner().invoke(main, ["worker", "--drain", "default"])

    assert result.exit_code == 0, result.output
    assert "Processed 0 job(s)" in result.output
