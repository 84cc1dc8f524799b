from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile, status
from starlette.concurrency import run_in_threadpool
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.timecapsule.dependencies import get_capsule_service
from backend.timecapsule.models.contracts import (
    CapsuleStats,
    CreateCapsuleResult,
    ErrorResponse,
    PublicCapsule,
)
from backend.timecapsule.services.capsule_service import CapsuleService, MediaPayload

router = APIRouter(prefix="/api/messages", tags=["messages"])

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


@router.get(
    "/public",
    response_model=list[PublicCapsule],
    operation_id="list_public_messages",
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
)
def list_public_messages(
    service: Annotated[CapsuleService, Depends(get_capsule_service)],
) -> list[PublicCapsule]:
    return service.list_public_now()


@router.get(
    "/stats",
    response_model=CapsuleStats,
    operation_id="message_stats",
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
)
def message_stats(
    service: Annotated[CapsuleService, Depends(get_capsule_service)],
) -> CapsuleStats:
    return service.stats_now()


@router.post(
    "",
    response_model=CreateCapsuleResult,
    status_code=status.HTTP_201_CREATED,
    operation_id="create_message",
    responses=_ERROR_RESPONSES,
)
async def create_message(
    response: Response,
    service: Annotated[CapsuleService, Depends(get_capsule_service)],
    title: Annotated[str | None, Form()] = None,
    message_type: Annotated[str | None, Form(alias="type")] = None,
    publish_at: Annotated[str | None, Form(alias="publishAt")] = None,
    text_content: Annotated[str | None, Form(alias="textContent")] = None,
    email: Annotated[str | None, Form()] = None,
    file: Annotated[UploadFile | None, File()] = None,
) -> CreateCapsuleResult:
    media: MediaPayload | None = None
    if file is not None and file.filename:
        media = MediaPayload(
            data=await file.read(),
            content_type=file.content_type or "application/octet-stream",
            filename=file.filename,
        )

    context_tokens = bind_contextvars(capsule_type=(message_type or "").strip().lower())
    try:
        result = await run_in_threadpool(
            service.create_capsule,
            title=title,
            capsule_type=message_type,
            publish_at=publish_at,
            text_content=text_content,
            media=media,
            email=email,
        )
    finally:
        reset_contextvars(**context_tokens)

    response.headers["Location"] = f"/api/messages/{result.id}"
    return result
