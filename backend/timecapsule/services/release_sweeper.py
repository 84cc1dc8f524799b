from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TextIO, assert_never
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.timecapsule.errors import ConflictError
from backend.timecapsule.models.capsule import Capsule
from backend.timecapsule.repositories.capsule_repository import CapsuleRepository
from backend.timecapsule.repositories.common import utc_now
from backend.timecapsule.services.notification_dispatcher import (
    DispatchOutcome,
    NotificationDispatcher,
)
from backend.timecapsule.telemetry import TelemetryClient

LOGGER = logging.getLogger("time_capsule.sweeper")
DEFAULT_POLL_INTERVAL_SECONDS = 60
_STOP_JOIN_TIMEOUT_SECONDS = 3

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


@dataclass(frozen=True)
class SweepStats:
    due: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: int = 0


class ReleaseSweeper:
    """
    Background loop that notifies owners once their capsules are public.

    Delivery is at-least-once: a capsule is marked notified only after the
    dispatcher reports success (or a deliberate skip), so failures are retried
    on the next pass. Concurrent sweepers are arbitrated by the repository's
    version check in `mark_notified`.
    """

    def __init__(
        self,
        repository: CapsuleRepository,
        dispatcher: NotificationDispatcher,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        *,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._poll_interval_seconds = max(0.05, float(poll_interval_seconds))
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock_path = lock_path
        self._lock_file: TextIO | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            if self._stop_event.is_set():
                LOGGER.warning("sweeper start refused; previous loop is still stopping")
            return

        if self._lock_file is None and not self._try_acquire_process_lock():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="time-capsule-sweeper")
        self._thread.daemon = True
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=_STOP_JOIN_TIMEOUT_SECONDS)
            if self._thread.is_alive():
                # Still inside a pass; it exits once the current item finishes.
                LOGGER.warning("sweeper did not stop within %ss", _STOP_JOIN_TIMEOUT_SECONDS)
                return
            self._thread = None
        self._release_process_lock()

    def run_once(self, now: datetime | None = None) -> SweepStats:
        """Run a single pass. Listing failures propagate; per-item failures do not."""
        pass_now = now if now is not None else self._clock()
        due = self._repository.list_due_for_notification(pass_now)

        sent = skipped = failed = conflicts = 0
        for index, capsule in enumerate(due):
            if self._stop_event.is_set():
                LOGGER.info("sweep interrupted by shutdown remaining=%s", len(due) - index)
                break
            if not capsule.email.strip():
                continue

            outcome = self._notify(capsule)
            if outcome is None:
                failed += 1
                continue

            try:
                self._repository.mark_notified(capsule)
            except ConflictError:
                conflicts += 1
                LOGGER.info("capsule already notified elsewhere capsule_id=%s", capsule.id)
                continue
            except Exception:
                failed += 1
                LOGGER.warning(
                    "marking capsule notified failed capsule_id=%s", capsule.id, exc_info=True
                )
                continue

            match outcome:
                case DispatchOutcome.SENT:
                    sent += 1
                case DispatchOutcome.SKIPPED:
                    skipped += 1
                case _:
                    assert_never(outcome)

        return SweepStats(
            due=len(due),
            sent=sent,
            skipped=skipped,
            failed=failed,
            conflicts=conflicts,
        )

    def _notify(self, capsule: Capsule) -> DispatchOutcome | None:
        try:
            outcome = self._dispatcher.send(capsule.email, capsule.title, capsule.publish_at)
        except Exception as exc:
            self._telemetry.emit(
                "notification.error",
                capsule_id=capsule.id,
                error_type=type(exc).__name__,
            )
            LOGGER.warning("release notification failed capsule_id=%s", capsule.id, exc_info=True)
            return None

        self._telemetry.emit("notification.finish", capsule_id=capsule.id, outcome=outcome.value)
        return outcome

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._run_pass()
            self._stop_event.wait(self._poll_interval_seconds)

    def _run_pass(self) -> None:
        pass_id = uuid4().hex
        pass_tokens = bind_contextvars(sweeper_pass_id=pass_id)
        started_at = time.perf_counter()
        self._telemetry.emit("sweeper.pass.start", pass_id=pass_id)
        try:
            stats = self.run_once()
        except Exception as exc:
            self._telemetry.emit(
                "sweeper.pass.error",
                pass_id=pass_id,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            LOGGER.error("failed while processing release notifications", exc_info=True)
        else:
            self._telemetry.emit(
                "sweeper.pass.finish",
                pass_id=pass_id,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                due=stats.due,
                sent=stats.sent,
                skipped=stats.skipped,
                failed=stats.failed,
                conflicts=stats.conflicts,
            )
            if stats.due:
                LOGGER.info(
                    "sweep finished due=%s sent=%s skipped=%s failed=%s conflicts=%s",
                    stats.due,
                    stats.sent,
                    stats.skipped,
                    stats.failed,
                    stats.conflicts,
                )
        finally:
            reset_contextvars(**pass_tokens)

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None or fcntl is None:
            return True

        try:
            self._lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = self._lock_path.open("a+", encoding="utf-8")
        except OSError:
            LOGGER.warning(
                "sweeper lock file unavailable path=%s; starting anyway",
                self._lock_path,
                exc_info=True,
            )
            return True

        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            lock_file.close()
            LOGGER.info(
                "sweeper start skipped; lock held by another loop path=%s", self._lock_path
            )
            return False

        lock_file.truncate(0)
        lock_file.write(f"{os.getpid()}\n")
        lock_file.flush()
        self._lock_file = lock_file
        return True

    def _release_process_lock(self) -> None:
        if self._lock_file is None:
            return
        # Closing the descriptor drops the flock.
        self._lock_file.close()
        self._lock_file = None
