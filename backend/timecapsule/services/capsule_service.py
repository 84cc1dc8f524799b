from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from uuid import uuid4

from backend.timecapsule.errors import (
    CapsuleError,
    InvalidInputError,
    UnavailableError,
)
from backend.timecapsule.models.capsule import (
    Capsule,
    CapsuleType,
    is_media_type,
    media_content_type_prefix,
    parse_timestamp,
)
from backend.timecapsule.models.contracts import CapsuleStats, CreateCapsuleResult, PublicCapsule
from backend.timecapsule.repositories.capsule_repository import CapsuleRepository
from backend.timecapsule.repositories.common import utc_now
from backend.timecapsule.storage.object_store import ObjectStore
from backend.timecapsule.telemetry import TelemetryClient

LOGGER = logging.getLogger("time_capsule.service")
MAX_AUDIO_BYTES = 50 * 1024 * 1024
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+$")
_EXTENSION_PATTERN = re.compile(r"^\.[A-Za-z0-9]{1,16}$")


@dataclass(frozen=True)
class MediaPayload:
    data: bytes
    content_type: str
    filename: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class _ValidatedRequest:
    title: str
    capsule_type: CapsuleType
    publish_at: datetime
    text_content: str | None
    media: MediaPayload | None
    email: str


class CapsuleService:
    def __init__(
        self,
        repository: CapsuleRepository,
        object_store: ObjectStore,
        *,
        max_audio_bytes: int = MAX_AUDIO_BYTES,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: uuid4().hex,
    ) -> None:
        self._repository = repository
        self._object_store = object_store
        self._max_audio_bytes = max_audio_bytes
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock
        self._id_factory = id_factory

    def create_capsule(
        self,
        *,
        title: str | None,
        capsule_type: str | CapsuleType | None,
        publish_at: str | datetime | None,
        text_content: str | None = None,
        media: MediaPayload | None = None,
        email: str | None = None,
    ) -> CreateCapsuleResult:
        """
        Validate, upload media if any, then persist the capsule.

        Either the capsule is stored and its id returned, or an error is raised
        and nothing stays behind: media uploaded for a capsule that could not be
        persisted is deleted again.
        """
        request = self._validate(
            title=title,
            capsule_type=capsule_type,
            publish_at=publish_at,
            text_content=text_content,
            media=media,
            email=email,
        )
        capsule_id = self._id_factory()

        media_key: str | None = None
        media_url: str | None = None
        if request.media is not None:
            media_key = build_media_key(request.capsule_type, capsule_id, request.media.filename)
            media_url = self._object_store.upload(
                request.media.data,
                request.media.content_type,
                media_key,
            )

        try:
            capsule = Capsule(
                id=capsule_id,
                title=request.title,
                type=request.capsule_type,
                publish_at=request.publish_at,
                created_at=self._clock(),
                text_content=request.text_content,
                media_url=media_url,
                email=request.email,
                notified=False,
            )
            self._repository.add(capsule)
        except CapsuleError as exc:
            if media_key is not None:
                self._discard_media(media_key)
            self._telemetry.emit(
                "capsule.create.error",
                capsule_type=request.capsule_type.value,
                error_type=type(exc).__name__,
            )
            raise

        self._telemetry.emit(
            "capsule.create.finish",
            capsule_id=capsule.id,
            capsule_type=capsule.type.value,
            notify=bool(capsule.email),
        )
        LOGGER.info("capsule created capsule_id=%s type=%s", capsule.id, capsule.type)
        return CreateCapsuleResult(id=capsule.id, publish_at=capsule.publish_at)

    def list_public_now(self) -> list[PublicCapsule]:
        return [
            PublicCapsule.from_capsule(capsule)
            for capsule in self._repository.list_public(self._clock())
        ]

    def stats_now(self) -> CapsuleStats:
        counts = self._repository.count(self._clock())
        return CapsuleStats(total=counts.total, pending=counts.pending, released=counts.released)

    def _validate(
        self,
        *,
        title: str | None,
        capsule_type: str | CapsuleType | None,
        publish_at: str | datetime | None,
        text_content: str | None,
        media: MediaPayload | None,
        email: str | None,
    ) -> _ValidatedRequest:
        normalized_title = (title or "").strip()
        if not normalized_title:
            raise InvalidInputError("Title is required.", field="title")
        if capsule_type is None or (isinstance(capsule_type, str) and not capsule_type.strip()):
            raise InvalidInputError("Type is required.", field="type")
        kind = CapsuleType.parse(capsule_type)
        release_at = parse_timestamp(publish_at, field="publishAt")

        normalized_email = (email or "").strip()
        if normalized_email and not _EMAIL_PATTERN.match(normalized_email):
            raise InvalidInputError("email must be a valid address.", field="email")

        if not is_media_type(kind):
            normalized_text = (text_content or "").strip()
            if not normalized_text:
                raise InvalidInputError(
                    "textContent is required for text messages.", field="textContent"
                )
            return _ValidatedRequest(
                title=normalized_title,
                capsule_type=kind,
                publish_at=release_at,
                text_content=normalized_text,
                media=None,
                email=normalized_email,
            )

        if media is None:
            raise InvalidInputError(
                "file is required for image or audio messages.", field="file"
            )
        prefix = media_content_type_prefix(kind)
        if prefix is None or not media.content_type.lower().startswith(prefix):
            raise InvalidInputError(f"file must be an {kind} file.", field="file")
        if kind is CapsuleType.AUDIO and media.size > self._max_audio_bytes:
            limit_mib = self._max_audio_bytes // (1024 * 1024)
            raise InvalidInputError(
                f"Audio files must be {limit_mib}MB or less.", field="file"
            )
        return _ValidatedRequest(
            title=normalized_title,
            capsule_type=kind,
            publish_at=release_at,
            text_content=None,
            media=media,
            email=normalized_email,
        )

    def _discard_media(self, key: str) -> None:
        try:
            self._object_store.delete(key)
        except (UnavailableError, ValueError):
            LOGGER.warning("orphaned media left behind key=%s", key, exc_info=True)


def build_media_key(capsule_type: CapsuleType, capsule_id: str, filename: str | None) -> str:
    extension = PurePosixPath(filename or "").suffix
    if not _EXTENSION_PATTERN.match(extension):
        extension = ""
    return f"{capsule_type.value}/{capsule_id}{extension}"
