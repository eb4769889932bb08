"""Typed in-process event bus driving the frame pipeline."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable, Union

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from .frames import Frame
    from .store import EventRecord

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """Every event the pipeline publishes."""

    START_UP = "START_UP"
    SHUT_DOWN = "SHUT_DOWN"
    FRAME = "FRAME"
    FRAME_ERROR = "FRAME_ERROR"
    RECORD_START = "RECORD_START"
    RECORD_STOP = "RECORD_STOP"
    MOTION_START = "MOTION_START"
    MOTION_START_ENTITY = "MOTION_START_ENTITY"
    MOTION_STOP = "MOTION_STOP"
    MOTION_FRAME = "MOTION_FRAME"
    MOTION_RESET = "MOTION_RESET"
    HISTORY_START = "HISTORY_START"
    HISTORY_STOP = "HISTORY_STOP"
    HISTORY_FRAME = "HISTORY_FRAME"
    HISTORY_RESET = "HISTORY_RESET"


class PayloadKind(Enum):
    """Tag of the value carried by an :class:`Event`."""

    NONE = "none"
    TEXT = "text"
    FRAME = "frame"
    NUMERIC = "numeric"
    ENTITY = "entity"


Payload = Union[None, str, float, "Frame", "EventRecord"]
Handler = Callable[["Event"], None]
Admit = Callable[["Event"], "Event | None"]


def _payload_kind(payload: object) -> PayloadKind:
    from .frames import Frame
    from .store import EventRecord

    if payload is None:
        return PayloadKind.NONE
    if isinstance(payload, str):
        return PayloadKind.TEXT
    if isinstance(payload, Frame):
        return PayloadKind.FRAME
    if isinstance(payload, bool):
        raise TypeError("Boolean event payloads are not supported")
    if isinstance(payload, (int, float)):
        return PayloadKind.NUMERIC
    if isinstance(payload, EventRecord):
        return PayloadKind.ENTITY
    raise TypeError(f"Unsupported event payload type: {type(payload).__name__}")


@dataclass(frozen=True, slots=True)
class Event:
    """Immutable notification published on the :class:`EventBus`.

    Frame payloads are shared by reference. A listener that needs the
    pixels after its handler returns must take a copy.
    """

    kind: EventKind
    timestamp: datetime
    payload: Payload = None
    payload_kind: PayloadKind = field(init=False, default=PayloadKind.NONE)

    def __post_init__(self) -> None:
        if not isinstance(self.kind, EventKind):
            raise TypeError("Event kind must be an EventKind")
        object.__setattr__(self, "payload_kind", _payload_kind(self.payload))

    @classmethod
    def now(cls, kind: EventKind, payload: Payload = None) -> "Event":
        return cls(kind, datetime.now(timezone.utc), payload)

    @property
    def text(self) -> str | None:
        return self.payload if self.payload_kind is PayloadKind.TEXT else None  # type: ignore[return-value]

    @property
    def frame(self) -> "Frame | None":
        return self.payload if self.payload_kind is PayloadKind.FRAME else None  # type: ignore[return-value]

    @property
    def entity(self) -> "EventRecord | None":
        return self.payload if self.payload_kind is PayloadKind.ENTITY else None  # type: ignore[return-value]

    def with_payload(self, payload: Payload) -> "Event":
        """Return a copy of this event carrying *payload*."""

        return Event(self.kind, self.timestamp, payload)


class EventCycleError(RuntimeError):
    """Raised when a handler republishes the kind currently being dispatched."""


@dataclass(eq=False, slots=True)
class Subscription:
    """Registration handle returned by :meth:`EventBus.subscribe`."""

    kind: EventKind
    handler: Handler
    worker: bool = False
    admit: Admit | None = None
    reject: Handler | None = None


class EventBus:
    """Publish/subscribe hub with synchronous and worker dispatch.

    Synchronous handlers run on the publishing thread in registration
    order and :meth:`publish` returns once all of them completed. Worker
    handlers are handed to a single dedicated thread so they never block
    the publisher. Their optional ``admit`` callable runs synchronously
    first and either returns the event to hand off or ``None`` to drop it.
    When an admitted event cannot be queued, ``reject`` receives it so the
    subscriber can undo whatever ``admit`` claimed.
    """

    def __init__(self, *, worker_name: str = "event-worker") -> None:
        self._subscriptions: dict[EventKind, list[Subscription]] = {}
        self._lock = threading.Lock()
        self._local = threading.local()
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix=worker_name)
        self._closed = False

    # ------------------------------------------------------------------
    def subscribe(
        self,
        kind: EventKind,
        handler: Handler,
        *,
        worker: bool = False,
        admit: Admit | None = None,
        reject: Handler | None = None,
    ) -> Subscription:
        if (admit is not None or reject is not None) and not worker:
            raise ValueError("admit and reject are only supported for worker handlers")
        subscription = Subscription(kind=kind, handler=handler, worker=worker, admit=admit, reject=reject)
        with self._lock:
            self._subscriptions.setdefault(kind, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            handlers = self._subscriptions.get(subscription.kind, [])
            if subscription in handlers:
                handlers.remove(subscription)

    def subscribers(self, kind: EventKind) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions.get(kind, ()))

    # ------------------------------------------------------------------
    def publish(self, event: Event) -> None:
        if self._closed:
            raise RuntimeError("Event bus has been closed")
        active: set[EventKind] = self._active_kinds()
        if event.kind in active:
            raise EventCycleError(f"{event.kind.name} published from its own handler chain")
        active.add(event.kind)
        try:
            for subscription in self.subscribers(event.kind):
                if subscription.worker:
                    self._hand_off(subscription, event)
                else:
                    subscription.handler(event)
        finally:
            active.discard(event.kind)

    def _hand_off(self, subscription: Subscription, event: Event) -> None:
        admitted: Event | None = event
        if subscription.admit is not None:
            admitted = subscription.admit(event)
            if admitted is None:
                return
        try:
            future = self._worker.submit(subscription.handler, admitted)
        except RuntimeError:
            logger.warning("Worker stopped, dropping %s", admitted.kind.name)
            if subscription.reject is not None:
                subscription.reject(admitted)
            return
        future.add_done_callback(_log_worker_failure)

    def _active_kinds(self) -> set[EventKind]:
        active = getattr(self._local, "active", None)
        if active is None:
            active = set()
            self._local.active = active
        return active

    # ------------------------------------------------------------------
    def close(self, *, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self._worker.shutdown(wait=wait)

    @property
    def closed(self) -> bool:
        return self._closed


def _log_worker_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Worker event handler failed", exc_info=exc)


__all__ = [
    "Event",
    "EventBus",
    "EventCycleError",
    "EventKind",
    "PayloadKind",
    "Subscription",
]
