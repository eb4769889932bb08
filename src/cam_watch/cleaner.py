"""Periodic removal of old recordings, history images and event records."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Event, Lock, Thread, current_thread
from typing import Callable

from .recording import NO_FILE
from .store import EventRecord, EventStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class CleanResult:
    cutoff: datetime
    files_deleted: int = 0
    files_missing: int = 0
    directories_removed: int = 0
    records_deleted: int = 0


class Cleaner:
    """Delete files referenced by events older than ``max_age_s``."""

    def __init__(
        self,
        store: EventStore,
        device_name: str,
        max_age_s: float,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_age_s <= 0:
            raise ValueError("max_age_s must be positive")
        self._store = store
        self._device_name = device_name
        self._max_age = timedelta(seconds=float(max_age_s))
        self._clock = clock

    def clean(self, now: datetime | None = None) -> CleanResult:
        cutoff = (now or self._clock()) - self._max_age
        events = self._store.find_events_older_than(self._device_name, cutoff)
        if not events:
            logger.info("No files to delete")
            return CleanResult(cutoff=cutoff)
        logger.info("Deleting %d files", len(events))
        deleted, missing, directories = self._delete_files(events)
        removed = self._remove_empty_dirs(directories)
        records = self._store.delete_events_older_than(self._device_name, cutoff)
        logger.info("%d records deleted", records)
        return CleanResult(
            cutoff=cutoff,
            files_deleted=deleted,
            files_missing=missing,
            directories_removed=removed,
            records_deleted=records,
        )

    @staticmethod
    def _delete_files(events: list[EventRecord]) -> tuple[int, int, set[Path]]:
        deleted = 0
        missing = 0
        directories: set[Path] = set()
        for event in events:
            name = event.event_data
            if not name or name == NO_FILE:
                continue
            path = Path(name)
            try:
                path.unlink()
                deleted += 1
            except FileNotFoundError:
                logger.error("Error deleting %s", path)
                missing += 1
            directories.add(path.parent)
        return deleted, missing, directories

    @staticmethod
    def _remove_empty_dirs(directories: set[Path]) -> int:
        removed = 0
        for directory in sorted(directories):
            try:
                directory.rmdir()
            except OSError:
                logger.info("%s not deleted", directory)
                continue
            logger.info("%s deleted", directory)
            removed += 1
        return removed


class CleanerService:
    """Run :meth:`Cleaner.clean` on a background thread every ``interval_s``."""

    def __init__(self, cleaner: Cleaner, interval_s: float) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._cleaner = cleaner
        self._interval = float(interval_s)
        self._stop_event = Event()
        self._lock = Lock()
        self._thread: Thread | None = None
        self._last_result: CleanResult | None = None

    @property
    def last_result(self) -> CleanResult | None:
        return self._last_result

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        with self._lock:
            thread = self._thread
            if thread is not None and thread.is_alive():
                return
            self._stop_event.clear()
            thread = Thread(target=self._run, name="CamWatchCleaner", daemon=True)
            self._thread = thread
        thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        # First run waits one interval, matching a fixed delay schedule.
        while not self._stop_event.wait(self._interval):
            try:
                self._last_result = self._cleaner.clean()
            except Exception:  # pragma: no cover - defensive guard
                logger.exception("Scheduled cleanup failed")
        with self._lock:
            if self._thread is current_thread():
                self._thread = None


__all__ = ["CleanResult", "Cleaner", "CleanerService"]
