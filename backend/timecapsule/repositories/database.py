from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

DEFAULT_TIMEOUT_SECONDS = 5.0

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS capsules (
    id TEXT PRIMARY KEY,
    partition_key TEXT NOT NULL,
    title TEXT NOT NULL,
    capsule_type TEXT NOT NULL,
    text_content TEXT NULL,
    media_url TEXT NULL,
    publish_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    email TEXT NOT NULL DEFAULT '',
    notified INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_capsules_partition_publish_at
ON capsules(partition_key, publish_at);

CREATE INDEX IF NOT EXISTS idx_capsules_notified_publish_at
ON capsules(notified, publish_at);
"""


class Database:
    def __init__(self, path: Path, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._path = path
        self._timeout_seconds = max(0.1, float(timeout_seconds))

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=self._timeout_seconds)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA_SQL)
