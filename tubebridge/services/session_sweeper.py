from __future__ import annotations

import errno
import logging
import os
import threading
from pathlib import Path
from typing import IO, Protocol
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from tubebridge.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubebridge.sweeper")

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


class ExpiredSessionPurger(Protocol):
    def purge_expired(self) -> int:
        ...


class SessionSweeper:
    """Background thread deleting expired session records on a fixed interval.

    When `lock_path` is given, only one process sharing the sessions directory
    runs the sweep.
    """

    def __init__(
        self,
        repository: ExpiredSessionPurger,
        interval_seconds: int,
        *,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
    ) -> None:
        self._repository = repository
        self._interval_seconds = max(1, interval_seconds)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock_path = lock_path
        self._lock_file: IO[str] | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        if not self._try_acquire_process_lock():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="tubebridge-session-sweeper")
        self._thread.daemon = True
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        self._release_process_lock()

    def run_once(self) -> int:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(sweep_tick_id=tick_id)
        try:
            with self._telemetry.span("sessions.sweep", tick_id=tick_id) as outcome:
                purged = self._repository.purge_expired()
                outcome["purged"] = purged
            return purged
        finally:
            reset_contextvars(**tick_tokens)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                LOGGER.warning("session sweep failed", exc_info=True)
            self._stop_event.wait(self._interval_seconds)

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None:
            return True

        if fcntl is None:
            LOGGER.warning("sweeper single-instance lock unavailable on this platform; starting")
            return True

        lock_path = self._lock_path
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = lock_path.open("a+", encoding="utf-8")
        except OSError:
            LOGGER.warning(
                "sweeper lock file unavailable path=%s; starting anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            lock_file.close()
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info(
                    "sweeper start skipped; lock held by another process path=%s",
                    lock_path,
                )
                return False
            LOGGER.warning(
                "sweeper lock acquisition failed path=%s; starting anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}\n")
            lock_file.flush()
        except OSError:
            LOGGER.debug("sweeper lock metadata write failed path=%s", lock_path, exc_info=True)

        self._lock_file = lock_file
        return True

    def _release_process_lock(self) -> None:
        lock_file = self._lock_file
        if lock_file is None:
            return
        self._lock_file = None
        try:
            if fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("sweeper lock release failed path=%s", self._lock_path, exc_info=True)
        finally:
            lock_file.close()
