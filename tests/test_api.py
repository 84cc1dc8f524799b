from __future__ import annotations

import time
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.timecapsule.dependencies import get_capsule_repository, reset_cached_dependencies
from backend.timecapsule.main import create_app


def _iso(value: datetime) -> str:
    return value.isoformat()


def _past() -> str:
    return _iso(datetime.now(UTC) - timedelta(minutes=5))


def _future() -> str:
    return _iso(datetime.now(UTC) + timedelta(days=30))


def test_health_echoes_request_id(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-123"


def test_health_generates_request_id(client: TestClient) -> None:
    response = client.get("/health")

    assert response.headers["X-Request-ID"]


def test_create_text_message_then_list_public(client: TestClient) -> None:
    response = client.post(
        "/api/messages",
        data={
            "title": "Hello past",
            "type": "text",
            "publishAt": _past(),
            "textContent": "It worked",
            "email": "me@example.com",
        },
    )

    assert response.status_code == 201
    created = response.json()
    assert set(created) == {"id", "publishAt"}
    assert response.headers["Location"] == f"/api/messages/{created['id']}"

    listing = client.get("/api/messages/public")
    assert listing.status_code == 200
    [item] = listing.json()
    assert item["id"] == created["id"]
    assert item["title"] == "Hello past"
    assert item["type"] == "text"
    assert item["textContent"] == "It worked"
    assert item["mediaUrl"] is None
    assert "email" not in item
    assert "notified" not in item
    assert {"publishAt", "createdAt"} <= set(item)


def test_future_message_is_not_listed(client: TestClient) -> None:
    response = client.post(
        "/api/messages",
        data={
            "title": "Not yet",
            "type": "text",
            "publishAt": _future(),
            "textContent": "patience",
        },
    )

    assert response.status_code == 201
    assert client.get("/api/messages/public").json() == []


def test_invalid_request_reports_field(client: TestClient) -> None:
    response = client.post(
        "/api/messages",
        data={"type": "text", "publishAt": _past(), "textContent": "no title"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Title is required.", "field": "title"}


def test_unknown_type_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/messages",
        data={"title": "x", "type": "video", "publishAt": _past()},
    )

    assert response.status_code == 400
    assert response.json()["field"] == "type"


def test_publish_at_outside_utc_range_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/messages",
        data={
            "title": "Far future",
            "type": "text",
            "publishAt": "9999-12-31T23:59:59-05:00",
            "textContent": "x",
        },
    )

    assert response.status_code == 400
    assert response.json() == {
        "error": "publishAt must be a valid date time.",
        "field": "publishAt",
    }


def test_image_upload_is_served_from_media_path(client: TestClient, data_dir: Path) -> None:
    response = client.post(
        "/api/messages",
        data={"title": "Sunset", "type": "image", "publishAt": _past()},
        files={"file": ("sunset.png", b"fake-png-bytes", "image/png")},
    )

    assert response.status_code == 201
    capsule_id = response.json()["id"]
    [item] = client.get("/api/messages/public").json()
    assert item["mediaUrl"] == f"http://testserver/media/image/{capsule_id}.png"
    assert item["textContent"] is None

    media = client.get(f"/media/image/{capsule_id}.png")
    assert media.status_code == 200
    assert media.content == b"fake-png-bytes"
    assert (data_dir / "media" / "image" / f"{capsule_id}.png").exists()


def test_image_type_with_audio_file_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/messages",
        data={"title": "Wrong", "type": "image", "publishAt": _past()},
        files={"file": ("song.mp3", b"ID3", "audio/mpeg")},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "file must be an image file.", "field": "file"}


def test_stats_reports_pending_and_released(client: TestClient) -> None:
    for publish_at in (_past(), _future(), _future()):
        client.post(
            "/api/messages",
            data={"title": "t", "type": "text", "publishAt": publish_at, "textContent": "x"},
        )

    response = client.get("/api/messages/stats")

    assert response.status_code == 200
    assert response.json() == {"total": 3, "pending": 2, "released": 1}


@pytest.fixture
def small_upload_client(
    data_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> Iterator[TestClient]:
    _ = data_dir
    monkeypatch.setenv("TIME_CAPSULE_MAX_AUDIO_BYTES", "1024")
    monkeypatch.setenv("TIME_CAPSULE_MAX_UPLOAD_BYTES", "2048")
    reset_cached_dependencies()
    with TestClient(create_app()) as test_client:
        yield test_client
    reset_cached_dependencies()


def test_oversized_request_body_is_rejected(small_upload_client: TestClient) -> None:
    response = small_upload_client.post(
        "/api/messages",
        data={"title": "Long memo", "type": "audio", "publishAt": _past()},
        files={"file": ("memo.mp3", b"\0" * 4096, "audio/mpeg")},
    )

    assert response.status_code == 413
    assert response.json() == {"error": "Request body is too large."}
    assert small_upload_client.get("/api/messages/stats").json()["total"] == 0


def test_lifespan_runs_sweeper_when_enabled(
    data_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TIME_CAPSULE_ENABLE_SWEEPER", "1")
    monkeypatch.setenv("TIME_CAPSULE_SWEEPER_POLL_INTERVAL_SECONDS", "1")
    reset_cached_dependencies()
    try:
        with TestClient(create_app()) as test_client:
            created = test_client.post(
                "/api/messages",
                data={
                    "title": "Ping me",
                    "type": "text",
                    "publishAt": _past(),
                    "textContent": "hello",
                    "email": "me@example.com",
                },
            ).json()
            repository = get_capsule_repository()
            deadline = time.monotonic() + 5
            stored = repository.get(created["id"])
            while stored is not None and not stored.notified and time.monotonic() < deadline:
                time.sleep(0.1)
                stored = repository.get(created["id"])

            assert stored is not None
            # Without SMTP settings the release is skipped, but still recorded.
            assert stored.notified is True
            assert (data_dir / "sweeper.lock").exists()
    finally:
        reset_cached_dependencies()
