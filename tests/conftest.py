from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.timecapsule.dependencies import reset_cached_dependencies
from backend.timecapsule.main import create_app
from backend.timecapsule.repositories.capsule_repository import CapsuleRepository
from backend.timecapsule.repositories.database import Database


@pytest.fixture
def database(tmp_path: Path) -> Database:
    return Database(tmp_path / "capsules.db")


@pytest.fixture
def repository(database: Database) -> CapsuleRepository:
    return CapsuleRepository(database)


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    runtime_dir = tmp_path / "runtime-data"
    runtime_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("TIME_CAPSULE_DATA_DIR", str(runtime_dir))
    monkeypatch.setenv("TIME_CAPSULE_ENABLE_SWEEPER", "0")
    monkeypatch.setenv("TIME_CAPSULE_PUBLIC_BASE_URL", "http://testserver")
    monkeypatch.delenv("TIME_CAPSULE_SMTP_HOST", raising=False)
    return runtime_dir


@pytest.fixture
def client(data_dir: Path) -> Iterator[TestClient]:
    _ = data_dir
    reset_cached_dependencies()
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
    reset_cached_dependencies()
