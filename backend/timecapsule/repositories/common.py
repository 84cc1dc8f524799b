from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime

from backend.timecapsule.models.capsule import ensure_utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_storage_timestamp(value: datetime) -> str:
    # Fixed width, so text ordering in SQL matches chronological ordering.
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_storage_timestamp(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


class OneShotInitializer:
    """
    Runs an initialization callable once, on first use.

    Concurrent first callers serialize on the lock; only one of them runs the
    callable. A failed attempt leaves the guard open so the next call retries.
    After success the fast path never touches the lock.
    """

    def __init__(self, initialize: Callable[[], None]) -> None:
        self._initialize = initialize
        self._lock = threading.Lock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def ensure(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self._initialize()
            self._initialized = True
