from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from backend.timecapsule.errors import CapsuleError, ConflictError, UnavailableError
from backend.timecapsule.models.capsule import PARTITION, Capsule, CapsuleType
from backend.timecapsule.repositories.common import (
    OneShotInitializer,
    parse_storage_timestamp,
    to_storage_timestamp,
)
from backend.timecapsule.repositories.database import Database

LOGGER = logging.getLogger("time_capsule.repository")

_SELECT_COLUMNS = """
    id, title, capsule_type, text_content, media_url,
    publish_at, created_at, email, notified, version
"""


@dataclass(frozen=True)
class CapsuleCounts:
    total: int
    pending: int
    released: int


class CapsuleRepository:
    """
    Durable capsule records in a single logical partition.

    The table is created lazily on the first operation; every repository
    instance carries its own initialization guard.
    """

    def __init__(self, db: Database, *, partition: str = PARTITION) -> None:
        self._db = db
        self._partition = partition
        self._table = OneShotInitializer(db.initialize)

    @property
    def initialized(self) -> bool:
        return self._table.initialized

    def ensure_initialized(self) -> None:
        try:
            self._table.ensure()
        except (sqlite3.Error, OSError) as exc:
            LOGGER.warning("capsule store initialization failed path=%s", self._db.path)
            raise UnavailableError("Capsule store could not be initialized.") from exc

    def add(self, capsule: Capsule) -> None:
        with self._connection("add") as conn:
            conn.execute(
                """
                INSERT INTO capsules
                (id, partition_key, title, capsule_type, text_content, media_url,
                 publish_at, created_at, email, notified, version)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    capsule.id,
                    self._partition,
                    capsule.title,
                    capsule.type.value,
                    capsule.text_content,
                    capsule.media_url,
                    to_storage_timestamp(capsule.publish_at),
                    to_storage_timestamp(capsule.created_at),
                    capsule.email,
                    1 if capsule.notified else 0,
                    capsule.version,
                ),
            )

    def get(self, capsule_id: str) -> Capsule | None:
        with self._connection("get") as conn:
            row = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM capsules
                WHERE partition_key = ? AND id = ?
                """,
                (self._partition, capsule_id),
            ).fetchone()

        if row is None:
            return None
        return _row_to_capsule(row)

    def list_public(self, now: datetime) -> list[Capsule]:
        with self._connection("list_public") as conn:
            rows = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM capsules
                WHERE partition_key = ? AND publish_at <= ?
                ORDER BY publish_at ASC, created_at ASC, id ASC
                """,
                (self._partition, to_storage_timestamp(now)),
            ).fetchall()
        return _rows_to_capsules(rows)

    def list_due_for_notification(self, now: datetime) -> list[Capsule]:
        with self._connection("list_due_for_notification") as conn:
            rows = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM capsules
                WHERE partition_key = ?
                  AND notified = 0
                  AND email <> ''
                  AND publish_at <= ?
                ORDER BY publish_at ASC, id ASC
                """,
                (self._partition, to_storage_timestamp(now)),
            ).fetchall()
        return _rows_to_capsules(rows)

    def mark_notified(self, capsule: Capsule) -> Capsule:
        """
        Flip `notified` using the version captured when the capsule was read.

        Raises `ConflictError` when the stored row moved on in the meantime,
        which means another sweeper already handled it.
        """
        with self._connection("mark_notified") as conn:
            cursor = conn.execute(
                """
                UPDATE capsules
                SET notified = 1, version = version + 1
                WHERE partition_key = ? AND id = ? AND version = ? AND notified = 0
                """,
                (self._partition, capsule.id, capsule.version),
            )
            if cursor.rowcount != 1:
                raise ConflictError(
                    f"Capsule {capsule.id} changed concurrently (version={capsule.version})."
                )
        return capsule.marked_notified()

    def count(self, now: datetime) -> CapsuleCounts:
        with self._connection("count") as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN publish_at <= ? THEN 1 ELSE 0 END), 0) AS released
                FROM capsules
                WHERE partition_key = ?
                """,
                (to_storage_timestamp(now), self._partition),
            ).fetchone()

        total = int(row["total"]) if row is not None else 0
        released = int(row["released"]) if row is not None else 0
        return CapsuleCounts(total=total, pending=total - released, released=released)

    @contextmanager
    def _connection(self, action: str) -> Iterator[sqlite3.Connection]:
        self.ensure_initialized()
        try:
            with self._db.connection() as conn:
                yield conn
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Capsule store rejected {action} as a duplicate.") from exc
        except sqlite3.Error as exc:
            LOGGER.warning("capsule store %s failed", action, exc_info=True)
            raise UnavailableError(f"Capsule store unavailable during {action}.") from exc


def _rows_to_capsules(rows: Sequence[sqlite3.Row]) -> list[Capsule]:
    capsules: list[Capsule] = []
    for row in rows:
        try:
            capsules.append(_row_to_capsule(row))
        except (CapsuleError, ValueError):
            LOGGER.warning("skipping unreadable capsule row id=%s", row["id"], exc_info=True)
    return capsules


def _row_to_capsule(row: sqlite3.Row) -> Capsule:
    return Capsule(
        id=str(row["id"]),
        title=str(row["title"]),
        type=CapsuleType(str(row["capsule_type"])),
        text_content=_none_if_null(row["text_content"]),
        media_url=_none_if_null(row["media_url"]),
        publish_at=parse_storage_timestamp(str(row["publish_at"])),
        created_at=parse_storage_timestamp(str(row["created_at"])),
        email=str(row["email"] or ""),
        notified=bool(row["notified"]),
        version=int(row["version"]),
    )


def _none_if_null(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
