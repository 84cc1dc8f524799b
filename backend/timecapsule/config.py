from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DATA_DIR = ".time-capsule"
MIB = 1024 * 1024
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("capsules.db")),
    ("media_dir", Path("media")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "sweeper_enabled",
    "smtp_use_tls",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{TIME_CAPSULE_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return {1: True, 0: False}.get(value, default)
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class AppSettings(BaseSettings):
    """
    Runtime configuration, read from `TIME_CAPSULE_*` environment variables
    and an optional `.env` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="TIME_CAPSULE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Storage.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root directory for the capsule database, media files and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("capsules.db")),
        description=f"SQLite capsule store. {_data_dir_default_note(Path('capsules.db'))}",
    )
    media_dir: Path = Field(
        default=_default_in_data_dir(Path("media")),
        description=f"Uploaded image/audio files. {_data_dir_default_note(Path('media'))}",
    )
    sqlite_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How long a store call waits on a locked SQLite database.",
    )
    public_base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Externally reachable base URL used to build public media URLs.",
    )
    media_url_path: str = Field(
        default="/media",
        description="Path under which uploaded media is served.",
    )

    # Uploads.
    max_audio_bytes: int = Field(
        default=50 * MIB,
        ge=1,
        description="Largest accepted audio payload.",
    )
    max_upload_bytes: int = Field(
        default=55 * MIB,
        ge=1,
        description="Largest accepted create-request body.",
    )
    cors_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        description="Comma-separated allowed CORS origins. Empty allows any origin.",
    )

    # Release sweeper.
    sweeper_enabled: bool = Field(
        default=True,
        validation_alias="TIME_CAPSULE_ENABLE_SWEEPER",
        description="Run the background release-notification sweeper.",
    )
    sweeper_poll_interval_seconds: int = Field(
        default=60,
        ge=1,
        description="Seconds between sweeper passes.",
    )

    # Email notifications. Sending is skipped unless host, port and sender are set.
    smtp_host: str | None = Field(default=None, description="SMTP server host.")
    smtp_port: int = Field(default=587, ge=0, description="SMTP server port.")
    smtp_username: str | None = Field(default=None, description="SMTP login user.")
    smtp_password: str | None = Field(default=None, description="SMTP login password.")
    smtp_sender: str | None = Field(default=None, description="From address.")
    smtp_use_tls: bool = Field(default=True, description="Issue STARTTLS before login.")
    smtp_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Socket timeout for SMTP delivery.",
    )

    # Logging and telemetry.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(default="INFO", description="Console log level (stdout).")
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="`log` writes telemetry to its own log file; `none` disables it.",
    )

    @field_validator("public_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("TIME_CAPSULE_PUBLIC_BASE_URL must be a non-empty string.")
        return value.strip().rstrip("/")

    @field_validator("media_url_path", mode="before")
    @classmethod
    def _normalize_media_url_path(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("TIME_CAPSULE_MEDIA_URL_PATH must be a string.")
        normalized = "/" + value.strip().strip("/")
        if normalized == "/":
            raise ValueError("TIME_CAPSULE_MEDIA_URL_PATH must not be the site root.")
        return normalized

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_cors_origins(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            items: list[Any] = value.split(",")
        elif isinstance(value, list | tuple):
            items = list(value)
        else:
            raise ValueError("TIME_CAPSULE_CORS_ORIGINS must be a comma-separated string.")
        return tuple(
            origin.strip().rstrip("/")
            for origin in items
            if isinstance(origin, str) and origin.strip()
        )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("TIME_CAPSULE_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("TIME_CAPSULE_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("smtp_host", "smtp_username", "smtp_password", "smtp_sender", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @property
    def media_public_base_url(self) -> str:
        return f"{self.public_base_url}{self.media_url_path}"


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    return settings.model_copy(
        update={
            field_name: _resolve_path(getattr(settings, field_name))
            for field_name in _PATH_FIELDS
        }
    )


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    if settings.max_upload_bytes < settings.max_audio_bytes:
        raise ValueError(
            "TIME_CAPSULE_MAX_UPLOAD_BYTES must be at least TIME_CAPSULE_MAX_AUDIO_BYTES."
        )
    return settings
