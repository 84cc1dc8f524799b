from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import assert_never

from backend.timecapsule.errors import InvalidInputError

PARTITION = "message"


class CapsuleType(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"

    @classmethod
    def parse(cls, raw: object) -> CapsuleType:
        if isinstance(raw, CapsuleType):
            return raw
        if isinstance(raw, str):
            try:
                return cls(raw.strip().lower())
            except ValueError:
                pass
        raise InvalidInputError("Type must be text, image, or audio.", field="type")


def is_media_type(capsule_type: CapsuleType) -> bool:
    match capsule_type:
        case CapsuleType.TEXT:
            return False
        case CapsuleType.IMAGE | CapsuleType.AUDIO:
            return True
        case _:
            assert_never(capsule_type)


def media_content_type_prefix(capsule_type: CapsuleType) -> str | None:
    match capsule_type:
        case CapsuleType.TEXT:
            return None
        case CapsuleType.IMAGE:
            return "image/"
        case CapsuleType.AUDIO:
            return "audio/"
        case _:
            assert_never(capsule_type)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(raw: object, *, field: str = "publishAt") -> datetime:
    """Parse an ISO-8601 timestamp; values without an offset are taken as UTC."""
    if isinstance(raw, datetime):
        candidate = raw
    elif isinstance(raw, str) and raw.strip():
        try:
            candidate = datetime.fromisoformat(raw.strip())
        except ValueError as exc:
            raise InvalidInputError(f"{field} must be a valid date time.", field=field) from exc
    else:
        raise InvalidInputError(f"{field} is required.", field=field)
    try:
        return ensure_utc(candidate)
    except OverflowError as exc:
        # Offsets near year 1 or 9999 fall outside datetime once shifted to UTC.
        raise InvalidInputError(f"{field} must be a valid date time.", field=field) from exc


@dataclass(frozen=True)
class Capsule:
    id: str
    title: str
    type: CapsuleType
    publish_at: datetime
    created_at: datetime
    text_content: str | None = None
    media_url: str | None = None
    email: str = ""
    notified: bool = False
    version: int = 1

    def __post_init__(self) -> None:
        if not self.id:
            raise InvalidInputError("Capsule id must not be empty.", field="id")
        if not self.title.strip():
            raise InvalidInputError("Title is required.", field="title")
        if self.publish_at.tzinfo is None or self.created_at.tzinfo is None:
            raise InvalidInputError("Capsule timestamps must be timezone-aware.")

        # Exactly one payload, chosen by type.
        if is_media_type(self.type):
            if not self.media_url:
                raise InvalidInputError(
                    f"{self.type} capsules require a media URL.", field="mediaUrl"
                )
            if self.text_content is not None:
                raise InvalidInputError(
                    f"{self.type} capsules must not carry text content.", field="textContent"
                )
        else:
            if not self.text_content:
                raise InvalidInputError(
                    "textContent is required for text messages.", field="textContent"
                )
            if self.media_url is not None:
                raise InvalidInputError(
                    "text capsules must not carry a media URL.", field="mediaUrl"
                )

    def is_public(self, now: datetime) -> bool:
        return self.publish_at <= ensure_utc(now)

    def is_due_for_notification(self, now: datetime) -> bool:
        return not self.notified and bool(self.email) and self.is_public(now)

    def marked_notified(self) -> Capsule:
        return replace(self, notified=True, version=self.version + 1)
