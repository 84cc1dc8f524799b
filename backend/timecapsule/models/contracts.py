from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from backend.timecapsule.models.capsule import Capsule, CapsuleType


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class PublicCapsule(_CamelModel):
    id: str
    title: str
    type: CapsuleType
    text_content: str | None = None
    media_url: str | None = None
    publish_at: datetime
    created_at: datetime

    @classmethod
    def from_capsule(cls, capsule: Capsule) -> PublicCapsule:
        return cls(
            id=capsule.id,
            title=capsule.title,
            type=capsule.type,
            text_content=capsule.text_content,
            media_url=capsule.media_url,
            publish_at=capsule.publish_at,
            created_at=capsule.created_at,
        )


class CreateCapsuleResult(_CamelModel):
    id: str
    publish_at: datetime


class CapsuleStats(_CamelModel):
    total: int
    pending: int
    released: int


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    field: str | None = None
