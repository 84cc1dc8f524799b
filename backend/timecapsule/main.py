from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.timecapsule.api.routes import router
from backend.timecapsule.dependencies import (
    get_capsule_repository,
    get_dispatcher,
    get_object_store,
    get_settings,
    get_telemetry,
)
from backend.timecapsule.errors import (
    CapsuleError,
    ConflictError,
    InvalidInputError,
    UnavailableError,
)
from backend.timecapsule.logging_config import configure_application_logging
from backend.timecapsule.services.release_sweeper import ReleaseSweeper

LOGGER = logging.getLogger("time_capsule.app")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


def _warm_up_stores() -> None:
    # Same one-shot guards the request path uses; a failure here is retried lazily.
    settings = get_settings()
    for name, initialize in (
        ("capsules", get_capsule_repository().ensure_initialized),
        ("media", get_object_store().ensure_initialized),
    ):
        try:
            initialize()
        except UnavailableError:
            LOGGER.warning(
                "store warm-up failed store=%s data_dir=%s; will retry on first use",
                name,
                settings.data_dir,
                exc_info=True,
            )


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    _warm_up_stores()
    sweeper: ReleaseSweeper | None = None

    if settings.sweeper_enabled:
        sweeper = ReleaseSweeper(
            repository=get_capsule_repository(),
            dispatcher=get_dispatcher(),
            poll_interval_seconds=settings.sweeper_poll_interval_seconds,
            telemetry=get_telemetry(),
            lock_path=settings.data_dir / "sweeper.lock",
        )
        sweeper.start()

    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop()


def _error_status(exc: CapsuleError) -> int:
    if isinstance(exc, InvalidInputError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, UnavailableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def capsule_error_handler(_: Request, exc: Exception) -> Response:
    assert isinstance(exc, CapsuleError)
    status_code = _error_status(exc)
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        LOGGER.warning("request failed error_type=%s", type(exc).__name__)
    content: dict[str, object] = {"error": str(exc)}
    if isinstance(exc, InvalidInputError) and exc.field is not None:
        content["field"] = exc.field
    return JSONResponse(status_code=status_code, content=content)


def create_app() -> FastAPI:
    app = FastAPI(title="Time Capsule API", version="0.1.0", lifespan=app_lifespan)
    settings = get_settings()

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        telemetry = get_telemetry()
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        started_at = perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                "http.request.error",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            telemetry.emit(
                "http.request.finish",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                status_code=response.status_code,
            )
            return response
        finally:
            reset_contextvars(**context_tokens)

    async def upload_limit_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.method == "POST":
            declared_length = request.headers.get("content-length")
            if (
                declared_length is not None
                and declared_length.isdigit()
                and int(declared_length) > settings.max_upload_bytes
            ):
                return JSONResponse(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    content={"error": "Request body is too large."},
                )
        return await call_next(request)

    app.middleware("http")(upload_limit_middleware)
    app.middleware("http")(request_context_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins) or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CapsuleError, capsule_error_handler)
    app.include_router(router)
    app.mount(
        settings.media_url_path,
        StaticFiles(directory=settings.media_dir, check_dir=False),
        name="media",
    )
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )

    return app


app = create_app()
