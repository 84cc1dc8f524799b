from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from backend.timecapsule.errors import ConflictError, InvalidInputError, UnavailableError
from backend.timecapsule.models.capsule import Capsule, CapsuleType
from backend.timecapsule.repositories.capsule_repository import CapsuleRepository
from backend.timecapsule.repositories.database import Database
from backend.timecapsule.services.capsule_service import (
    CapsuleService,
    MediaPayload,
    build_media_key,
)
from backend.timecapsule.storage.object_store import LocalObjectStore

NOW = datetime(2026, 6, 1, 8, 0, 0, tzinfo=UTC)
MIB = 1024 * 1024


class _RecordingObjectStore:
    def __init__(self, *, fail_upload: bool = False) -> None:
        self.fail_upload = fail_upload
        self.uploads: list[tuple[str, str, int]] = []
        self.deleted: list[str] = []

    def upload(self, data: bytes, content_type: str, key: str) -> str:
        if self.fail_upload:
            raise UnavailableError("Media upload failed.")
        self.uploads.append((key, content_type, len(data)))
        return f"http://media.test/{key}"

    def delete(self, key: str) -> None:
        self.deleted.append(key)


class _RejectingRepository(CapsuleRepository):
    def add(self, capsule: Capsule) -> None:
        _ = capsule
        raise ConflictError("Capsule id already exists.")


def _service(
    repository: CapsuleRepository,
    store: _RecordingObjectStore | None = None,
    *,
    ids: list[str] | None = None,
) -> CapsuleService:
    pending_ids = list(ids or ["id-1", "id-2", "id-3"])
    return CapsuleService(
        repository,
        store if store is not None else _RecordingObjectStore(),
        clock=lambda: NOW,
        id_factory=lambda: pending_ids.pop(0),
    )


def test_create_text_capsule_then_list_after_release(repository: CapsuleRepository) -> None:
    service = _service(repository)
    publish_at = NOW - timedelta(minutes=1)

    result = service.create_capsule(
        title="  Graduation  ",
        capsule_type="TEXT",
        publish_at=publish_at.isoformat(),
        text_content="  Proud of you  ",
        email="me@example.com",
    )

    assert result.id == "id-1"
    assert result.publish_at == publish_at
    [public] = service.list_public_now()
    assert public.id == "id-1"
    assert public.title == "Graduation"
    assert public.type is CapsuleType.TEXT
    assert public.text_content == "Proud of you"
    assert public.media_url is None
    assert public.created_at == NOW

    stored = repository.get("id-1")
    assert stored is not None
    assert stored.email == "me@example.com"
    assert stored.notified is False


def test_future_capsule_is_hidden_until_publish_time(repository: CapsuleRepository) -> None:
    service = _service(repository)
    service.create_capsule(
        title="Later",
        capsule_type=CapsuleType.TEXT,
        publish_at=NOW + timedelta(days=365),
        text_content="see you",
    )

    assert service.list_public_now() == []
    assert service.stats_now().pending == 1


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"title": "   "}, "title"),
        ({"title": None}, "title"),
        ({"capsule_type": None}, "type"),
        ({"capsule_type": "video"}, "type"),
        ({"publish_at": None}, "publishAt"),
        ({"publish_at": "next tuesday"}, "publishAt"),
        ({"publish_at": "9999-12-31T23:59:59-05:00"}, "publishAt"),
        ({"publish_at": "0001-01-01T00:00:00+05:00"}, "publishAt"),
        ({"text_content": "   "}, "textContent"),
        ({"email": "not-an-address"}, "email"),
    ],
)
def test_text_capsule_validation_errors_name_the_field(
    repository: CapsuleRepository,
    overrides: dict[str, object],
    field: str,
) -> None:
    arguments: dict[str, object] = {
        "title": "Hello",
        "capsule_type": "text",
        "publish_at": "2026-07-01T00:00:00Z",
        "text_content": "body",
        "email": "",
    }
    arguments.update(overrides)

    with pytest.raises(InvalidInputError) as exc_info:
        _service(repository).create_capsule(**arguments)  # type: ignore[arg-type]

    assert exc_info.value.field == field
    assert repository.count(NOW).total == 0


def test_media_capsule_requires_file(repository: CapsuleRepository) -> None:
    with pytest.raises(InvalidInputError) as exc_info:
        _service(repository).create_capsule(
            title="Photo",
            capsule_type="image",
            publish_at=NOW,
        )

    assert exc_info.value.field == "file"
    assert str(exc_info.value) == "file is required for image or audio messages."


def test_media_content_type_must_match_capsule_type(repository: CapsuleRepository) -> None:
    store = _RecordingObjectStore()

    with pytest.raises(InvalidInputError) as exc_info:
        _service(repository, store).create_capsule(
            title="Voice",
            capsule_type="audio",
            publish_at=NOW,
            media=MediaPayload(data=b"\x89PNG", content_type="image/png", filename="a.png"),
        )

    assert str(exc_info.value) == "file must be an audio file."
    assert store.uploads == []


def test_oversized_audio_is_rejected_before_any_side_effect(
    repository: CapsuleRepository,
) -> None:
    store = _RecordingObjectStore()
    audio = MediaPayload(data=b"\0" * (51 * MIB), content_type="audio/mpeg", filename="v.mp3")

    with pytest.raises(InvalidInputError) as exc_info:
        _service(repository, store).create_capsule(
            title="Voice memo",
            capsule_type="audio",
            publish_at=NOW,
            media=audio,
        )

    assert str(exc_info.value) == "Audio files must be 50MB or less."
    assert store.uploads == []
    assert repository.count(NOW).total == 0


def test_image_capsule_uploads_media_and_stores_url(repository: CapsuleRepository) -> None:
    store = _RecordingObjectStore()
    service = _service(repository, store)

    service.create_capsule(
        title="Sunset",
        capsule_type="image",
        publish_at=NOW,
        text_content="ignored for media",
        media=MediaPayload(data=b"png-bytes", content_type="image/png", filename="sun.PNG"),
    )

    assert store.uploads == [("image/id-1.PNG", "image/png", 9)]
    [public] = service.list_public_now()
    assert public.media_url == "http://media.test/image/id-1.PNG"
    assert public.text_content is None


def test_upload_failure_writes_no_record(repository: CapsuleRepository) -> None:
    store = _RecordingObjectStore(fail_upload=True)

    with pytest.raises(UnavailableError):
        _service(repository, store).create_capsule(
            title="Sunset",
            capsule_type="image",
            publish_at=NOW,
            media=MediaPayload(data=b"png", content_type="image/png"),
        )

    assert repository.count(NOW).total == 0


def test_media_is_removed_when_record_cannot_be_stored(database: Database) -> None:
    store = _RecordingObjectStore()
    service = _service(_RejectingRepository(database), store)

    with pytest.raises(ConflictError):
        service.create_capsule(
            title="Sunset",
            capsule_type="image",
            publish_at=NOW,
            media=MediaPayload(data=b"png", content_type="image/png", filename="s.png"),
        )

    assert store.deleted == ["image/id-1.png"]


def test_local_store_round_trip_through_service(
    repository: CapsuleRepository, tmp_path: Path
) -> None:
    store = LocalObjectStore(tmp_path / "media", "http://testserver/media")
    service = CapsuleService(repository, store, clock=lambda: NOW, id_factory=lambda: "abc")

    service.create_capsule(
        title="Song",
        capsule_type="audio",
        publish_at=NOW,
        media=MediaPayload(data=b"ID3", content_type="audio/mpeg", filename="song.mp3"),
    )

    assert (tmp_path / "media" / "audio" / "abc.mp3").read_bytes() == b"ID3"
    [public] = service.list_public_now()
    assert public.media_url == "http://testserver/media/audio/abc.mp3"


def test_stats_count_pending_and_released(repository: CapsuleRepository) -> None:
    service = _service(repository)
    for publish_at in (NOW - timedelta(days=1), NOW, NOW + timedelta(days=1)):
        service.create_capsule(
            title="t",
            capsule_type="text",
            publish_at=publish_at,
            text_content="x",
        )

    stats = service.stats_now()

    assert (stats.total, stats.pending, stats.released) == (3, 1, 2)


@pytest.mark.parametrize(
    ("filename", "expected"),
    [
        ("clip.mp3", "audio/c1.mp3"),
        (None, "audio/c1"),
        ("no-extension", "audio/c1"),
        ("weird.m p3", "audio/c1"),
        ("../../etc/passwd.wav", "audio/c1.wav"),
    ],
)
def test_build_media_key(filename: str | None, expected: str) -> None:
    assert build_media_key(CapsuleType.AUDIO, "c1", filename) == expected
