from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.archiver.config import AppSettings, load_settings
from backend.archiver.dependencies import reset_cached_dependencies
from backend.archiver.main import create_app
from backend.archiver.repositories.archive_store import ArchiveStore
from backend.archiver.repositories.database import Database
from backend.archiver.repositories.jobs_repository import JobsRepository


@pytest.fixture(autouse=True)
def _archiver_env_defaults(  # pyright: ignore[reportUnusedFunction]
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("VOD_ARCHIVER_DATA_DIR", str(tmp_path / "runtime-data"))
    monkeypatch.setenv("VOD_ARCHIVER_PLATFORM", "twitch")
    monkeypatch.setenv("VOD_ARCHIVER_TWITCH_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("VOD_ARCHIVER_TWITCH_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setenv("VOD_ARCHIVER_ENABLE_WORKERS", "0")
    monkeypatch.setenv("VOD_ARCHIVER_ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("VOD_ARCHIVER_TELEMETRY_ENABLED", "0")
    reset_cached_dependencies()


@pytest.fixture
def settings() -> AppSettings:
    return load_settings()


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


@pytest.fixture
def jobs_repository(database: Database) -> JobsRepository:
    return JobsRepository(database)


@pytest.fixture
def store(database: Database) -> ArchiveStore:
    return ArchiveStore(database)


@pytest.fixture
def client() -> Iterator[TestClient]:
    reset_cached_dependencies()
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
    reset_cached_dependencies()
