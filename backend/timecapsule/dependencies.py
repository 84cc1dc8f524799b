from __future__ import annotations

from functools import lru_cache

from backend.timecapsule.config import AppSettings, load_settings
from backend.timecapsule.repositories.capsule_repository import CapsuleRepository
from backend.timecapsule.repositories.database import Database
from backend.timecapsule.services.capsule_service import CapsuleService
from backend.timecapsule.services.notification_dispatcher import SmtpEmailDispatcher
from backend.timecapsule.storage.object_store import LocalObjectStore
from backend.timecapsule.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    settings = get_settings()
    return Database(settings.db_path, timeout_seconds=settings.sqlite_timeout_seconds)


@lru_cache(maxsize=1)
def get_capsule_repository() -> CapsuleRepository:
    return CapsuleRepository(get_database())


@lru_cache(maxsize=1)
def get_object_store() -> LocalObjectStore:
    settings = get_settings()
    return LocalObjectStore(settings.media_dir, settings.media_public_base_url)


@lru_cache(maxsize=1)
def get_dispatcher() -> SmtpEmailDispatcher:
    settings = get_settings()
    return SmtpEmailDispatcher(
        host=settings.smtp_host,
        port=settings.smtp_port,
        sender=settings.smtp_sender,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        timeout_seconds=settings.smtp_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_capsule_service() -> CapsuleService:
    settings = get_settings()
    return CapsuleService(
        get_capsule_repository(),
        get_object_store(),
        max_audio_bytes=settings.max_audio_bytes,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_capsule_service.cache_clear()
    get_dispatcher.cache_clear()
    get_object_store.cache_clear()
    get_capsule_repository.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
