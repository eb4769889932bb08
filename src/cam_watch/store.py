"""SQLite persistence for pipeline events, frames and detections."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Iterable, Sequence

import sqlite3

# Events that reference files on disk and therefore drive cleanup.
FILE_EVENT_KINDS: tuple[str, ...] = ("RECORD_START", "HISTORY_STOP")
# Events retained when old records are purged.
LIFECYCLE_EVENT_KINDS: tuple[str, ...] = ("START_UP", "SHUT_DOWN")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class EventRecord:
    id: int
    device_name: str
    event_type: str
    event_data: str | None
    event_time: datetime

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["event_time"] = self.event_time.isoformat()
        return payload


@dataclass(frozen=True, slots=True)
class FrameRecord:
    id: int
    event_id: int | None
    frame_time: datetime


@dataclass(frozen=True, slots=True)
class DetectionRecord:
    id: int
    frame_id: int
    label: str
    confidence: float
    x_min: int
    y_min: int
    x_max: int
    y_max: int


class EventStore:
    """Persist events, detection frames and detections.

    Errors from SQLite propagate to the caller; nothing is retried here.
    """

    def __init__(self, path: Path | str = Path("data/camwatch.db")) -> None:
        self._path = Path(path) if str(path) != ":memory:" else None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._memory: sqlite3.Connection | None = None
        if self._path is None:
            self._memory = sqlite3.connect(":memory:", check_same_thread=False)
        self._mutex = RLock()
        self._ensure_schema()

    @property
    def path(self) -> Path | None:
        return self._path

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def create_event(
        self,
        device_name: str,
        event_type: str,
        event_data: str | None,
        event_time: datetime,
    ) -> EventRecord:
        if not device_name:
            raise ValueError("Device name is required")
        if not event_type:
            raise ValueError("Event type is required")
        event_time = _as_utc(event_time)
        with self._mutex:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO events (device_name, event_type, event_data, event_time)
                    VALUES (?, ?, ?, ?)
                    """,
                    (device_name, event_type, event_data, event_time.isoformat()),
                )
                conn.commit()
        return EventRecord(
            id=int(cursor.lastrowid),
            device_name=device_name,
            event_type=event_type,
            event_data=event_data,
            event_time=event_time,
        )

    def get_event(self, event_id: int) -> EventRecord | None:
        with self._mutex:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, device_name, event_type, event_data, event_time FROM events WHERE id = ?",
                    (int(event_id),),
                ).fetchone()
        return self._row_to_event(row) if row is not None else None

    def list_events(
        self,
        device_name: str | None = None,
        kinds: Sequence[str] | None = None,
    ) -> list[EventRecord]:
        query = "SELECT id, device_name, event_type, event_data, event_time FROM events"
        clauses: list[str] = []
        params: list[object] = []
        if device_name is not None:
            clauses.append("device_name = ?")
            params.append(device_name)
        if kinds:
            clauses.append(f"event_type IN ({', '.join('?' for _ in kinds)})")
            params.extend(kinds)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def find_events_older_than(self, device_name: str, cutoff: datetime) -> list[EventRecord]:
        """Return file-carrying events at or before *cutoff*."""

        placeholders = ", ".join("?" for _ in FILE_EVENT_KINDS)
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id, device_name, event_type, event_data, event_time FROM events
                    WHERE device_name = ? AND event_type IN ({placeholders}) AND event_time <= ?
                    ORDER BY id
                    """,
                    (device_name, *FILE_EVENT_KINDS, _as_utc(cutoff).isoformat()),
                ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def delete_events_older_than(self, device_name: str, cutoff: datetime) -> int:
        """Delete events at or before *cutoff*, keeping start up and shut down."""

        placeholders = ", ".join("?" for _ in LIFECYCLE_EVENT_KINDS)
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id FROM events
                    WHERE device_name = ? AND event_type NOT IN ({placeholders}) AND event_time <= ?
                    """,
                    (device_name, *LIFECYCLE_EVENT_KINDS, _as_utc(cutoff).isoformat()),
                ).fetchall()
                removed = self._delete_ids(conn, [int(row[0]) for row in rows])
                conn.commit()
        return removed

    # ------------------------------------------------------------------
    # Frames and detections
    # ------------------------------------------------------------------
    def create_frame(self, event_id: int | None, frame_time: datetime) -> FrameRecord:
        frame_time = _as_utc(frame_time)
        with self._mutex:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO frames (event_id, frame_time) VALUES (?, ?)",
                    (event_id, frame_time.isoformat()),
                )
                conn.commit()
        return FrameRecord(id=int(cursor.lastrowid), event_id=event_id, frame_time=frame_time)

    def add_detection(
        self,
        frame_id: int,
        label: str,
        confidence: float,
        box: tuple[int, int, int, int],
    ) -> DetectionRecord:
        """Attach a detection; *box* is ``(x_min, y_min, x_max, y_max)``."""

        label = str(label).strip()
        if not label or len(label) > 50:
            raise ValueError("Detection label must be 1-50 characters")
        x_min, y_min, x_max, y_max = (int(value) for value in box)
        with self._mutex:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO detections (frame_id, label, confidence, x_min, y_min, x_max, y_max)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (int(frame_id), label, float(confidence), x_min, y_min, x_max, y_max),
                )
                conn.commit()
        return DetectionRecord(
            id=int(cursor.lastrowid),
            frame_id=int(frame_id),
            label=label,
            confidence=float(confidence),
            x_min=x_min,
            y_min=y_min,
            x_max=x_max,
            y_max=y_max,
        )

    def list_frames(self, event_id: int | None = None) -> list[FrameRecord]:
        query = "SELECT id, event_id, frame_time FROM frames"
        params: tuple[object, ...] = ()
        if event_id is not None:
            query += " WHERE event_id = ?"
            params = (int(event_id),)
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [
            FrameRecord(id=int(row[0]), event_id=row[1], frame_time=datetime.fromisoformat(row[2]))
            for row in rows
        ]

    def list_detections(self, frame_id: int) -> list[DetectionRecord]:
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, frame_id, label, confidence, x_min, y_min, x_max, y_max
                    FROM detections WHERE frame_id = ? ORDER BY id
                    """,
                    (int(frame_id),),
                ).fetchall()
        return [
            DetectionRecord(
                id=int(row[0]),
                frame_id=int(row[1]),
                label=str(row[2]),
                confidence=float(row[3]),
                x_min=int(row[4]),
                y_min=int(row[5]),
                x_max=int(row[6]),
                y_max=int(row[7]),
            )
            for row in rows
        ]

    def close(self) -> None:
        if self._memory is not None:
            self._memory.close()
            self._memory = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        if self._memory is not None:
            return _SharedConnection(self._memory)  # type: ignore[return-value]
        return sqlite3.connect(self._path)

    def _ensure_schema(self) -> None:
        with self._mutex:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        device_name TEXT NOT NULL,
                        event_type TEXT NOT NULL,
                        event_data TEXT,
                        event_time TEXT NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS idx_events_device_time ON events(device_name, event_time);
                    CREATE TABLE IF NOT EXISTS frames (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        event_id INTEGER,
                        frame_time TEXT NOT NULL
                    );
                    CREATE TABLE IF NOT EXISTS detections (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        frame_id INTEGER NOT NULL,
                        label TEXT NOT NULL,
                        confidence REAL NOT NULL,
                        x_min INTEGER NOT NULL,
                        y_min INTEGER NOT NULL,
                        x_max INTEGER NOT NULL,
                        y_max INTEGER NOT NULL
                    );
                    """
                )
                conn.commit()

    def _delete_ids(self, conn: sqlite3.Connection, event_ids: Iterable[int]) -> int:
        ids = list(event_ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        frame_rows = conn.execute(
            f"SELECT id FROM frames WHERE event_id IN ({placeholders})", ids
        ).fetchall()
        frame_ids = [int(row[0]) for row in frame_rows]
        if frame_ids:
            frame_placeholders = ", ".join("?" for _ in frame_ids)
            conn.execute(f"DELETE FROM detections WHERE frame_id IN ({frame_placeholders})", frame_ids)
            conn.execute(f"DELETE FROM frames WHERE id IN ({frame_placeholders})", frame_ids)
        cursor = conn.execute(f"DELETE FROM events WHERE id IN ({placeholders})", ids)
        return int(cursor.rowcount)

    @staticmethod
    def _row_to_event(row: Sequence[object]) -> EventRecord:
        return EventRecord(
            id=int(row[0]),  # type: ignore[arg-type]
            device_name=str(row[1]),
            event_type=str(row[2]),
            event_data=row[3] if row[3] is None else str(row[3]),
            event_time=datetime.fromisoformat(str(row[4])),
        )


class _SharedConnection:
    """Context manager wrapper keeping an in-memory connection open."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def __enter__(self) -> sqlite3.Connection:
        return self._conn

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self._conn.rollback()


__all__ = [
    "DetectionRecord",
    "EventRecord",
    "EventStore",
    "FILE_EVENT_KINDS",
    "FrameRecord",
    "LIFECYCLE_EVENT_KINDS",
]
