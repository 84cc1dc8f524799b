from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Protocol

from backend.timecapsule.errors import UnavailableError
from backend.timecapsule.repositories.common import OneShotInitializer

LOGGER = logging.getLogger("time_capsule.object_store")


class ObjectStore(Protocol):
    def upload(self, data: bytes, content_type: str, key: str) -> str:
        ...

    def delete(self, key: str) -> None:
        ...


class LocalObjectStore:
    """Media blobs as files under `root_dir`, published at `public_base_url/<key>`."""

    def __init__(self, root_dir: Path, public_base_url: str) -> None:
        self._root_dir = root_dir
        self._public_base_url = public_base_url.rstrip("/")
        self._container = OneShotInitializer(self._create_container)

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    def ensure_initialized(self) -> None:
        try:
            self._container.ensure()
        except OSError as exc:
            raise UnavailableError("Media store could not be initialized.") from exc

    def upload(self, data: bytes, content_type: str, key: str) -> str:
        self.ensure_initialized()
        relative = _safe_key(key)
        target = self._root_dir / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                os.replace(temp_name, target)
            except BaseException:
                Path(temp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            LOGGER.warning("media upload failed key=%s", key, exc_info=True)
            raise UnavailableError("Media upload failed.") from exc

        LOGGER.debug(
            "media uploaded key=%s content_type=%s bytes=%s", key, content_type, len(data)
        )
        return f"{self._public_base_url}/{relative.as_posix()}"

    def delete(self, key: str) -> None:
        target = self._root_dir / _safe_key(key)
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            raise UnavailableError("Media delete failed.") from exc

    def _create_container(self) -> None:
        self._root_dir.mkdir(parents=True, exist_ok=True)
        LOGGER.info("media store ready path=%s", self._root_dir)


def _safe_key(key: str) -> PurePosixPath:
    relative = PurePosixPath(key)
    if not key or relative.is_absolute() or ".." in relative.parts:
        raise ValueError(f"Invalid object key: {key!r}")
    return relative
