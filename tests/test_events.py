from __future__ import annotations

import threading
from datetime import datetime, timezone

import numpy as np
import pytest

from cam_watch.events import Event, EventBus, EventCycleError, EventKind, PayloadKind
from cam_watch.frames import Frame


def _now() -> datetime:
    return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_event_payload_kinds_are_tagged() -> None:
    frame = Frame(np.zeros((2, 2, 3), dtype=np.uint8), _now())
    assert Event(EventKind.SHUT_DOWN, _now()).payload_kind is PayloadKind.NONE
    assert Event(EventKind.RECORD_START, _now(), "a.mkv").text == "a.mkv"
    assert Event(EventKind.FRAME, _now(), frame).frame is frame
    assert Event(EventKind.FRAME, _now(), 1.5).payload_kind is PayloadKind.NUMERIC
    with pytest.raises(TypeError):
        Event(EventKind.FRAME, _now(), object())  # type: ignore[arg-type]


def test_synchronous_handlers_run_in_registration_order() -> None:
    bus = EventBus()
    calls: list[str] = []
    bus.subscribe(EventKind.FRAME, lambda event: calls.append("first"))
    bus.subscribe(EventKind.FRAME, lambda event: calls.append("second"))
    bus.subscribe(EventKind.MOTION_START, lambda event: calls.append("other"))

    bus.publish(Event.now(EventKind.FRAME))

    assert calls == ["first", "second"]
    bus.close()


def test_handler_may_publish_other_kinds() -> None:
    bus = EventBus()
    seen: list[EventKind] = []
    bus.subscribe(EventKind.FRAME, lambda event: bus.publish(Event.now(EventKind.MOTION_START)))
    bus.subscribe(EventKind.MOTION_START, lambda event: seen.append(event.kind))

    bus.publish(Event.now(EventKind.FRAME))

    assert seen == [EventKind.MOTION_START]
    bus.close()


def test_republishing_same_kind_raises_cycle_error() -> None:
    bus = EventBus()
    bus.subscribe(EventKind.FRAME, lambda event: bus.publish(event))

    with pytest.raises(EventCycleError):
        bus.publish(Event.now(EventKind.FRAME))

    # The bus recovers once the failing chain unwound.
    bus.unsubscribe(bus.subscribers(EventKind.FRAME)[0])
    bus.publish(Event.now(EventKind.FRAME))
    bus.close()


def test_worker_handlers_run_off_the_publishing_thread() -> None:
    bus = EventBus()
    done = threading.Event()
    threads: list[str] = []

    def handler(event: Event) -> None:
        threads.append(threading.current_thread().name)
        done.set()

    bus.subscribe(EventKind.MOTION_FRAME, handler, worker=True)
    bus.publish(Event.now(EventKind.MOTION_FRAME))

    assert done.wait(2.0)
    assert threads and threads[0] != threading.current_thread().name
    bus.close()


def test_admit_can_drop_or_replace_events() -> None:
    bus = EventBus()
    received: list[str | None] = []
    decisions = iter([None, "replacement"])

    def admit(event: Event) -> Event | None:
        payload = next(decisions)
        return None if payload is None else event.with_payload(payload)

    bus.subscribe(EventKind.MOTION_FRAME, lambda event: received.append(event.text), worker=True, admit=admit)
    bus.publish(Event.now(EventKind.MOTION_FRAME, "dropped"))
    bus.publish(Event.now(EventKind.MOTION_FRAME, "original"))
    bus.close(wait=True)

    assert received == ["replacement"]


def test_admit_requires_worker() -> None:
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.subscribe(EventKind.FRAME, lambda event: None, admit=lambda event: event)
    bus.close()


def test_worker_failure_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()

    def explode(event: Event) -> None:
        raise RuntimeError("boom")

    bus.subscribe(EventKind.MOTION_FRAME, explode, worker=True)
    with caplog.at_level("ERROR"):
        bus.publish(Event.now(EventKind.MOTION_FRAME))
        bus.close(wait=True)

    assert "Worker event handler failed" in caplog.text


def test_publish_after_close_is_rejected() -> None:
    bus = EventBus()
    bus.close()
    assert bus.closed
    with pytest.raises(RuntimeError):
        bus.publish(Event.now(EventKind.FRAME))


def test_reject_receives_admitted_event_when_worker_is_gone(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    handled: list[Event] = []
    rejected: list[Event] = []

    # Shuts the worker down while the event is still being dispatched.
    bus.subscribe(EventKind.MOTION_FRAME, lambda event: bus.close(wait=False))
    bus.subscribe(
        EventKind.MOTION_FRAME,
        handled.append,
        worker=True,
        admit=lambda event: event.with_payload("claimed"),
        reject=rejected.append,
    )
    with caplog.at_level("WARNING"):
        bus.publish(Event.now(EventKind.MOTION_FRAME, "original"))

    assert handled == []
    assert [event.text for event in rejected] == ["claimed"]
    assert "Worker stopped" in caplog.text


def test_reject_requires_worker() -> None:
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.subscribe(EventKind.FRAME, lambda event: None, reject=lambda event: None)
    bus.close()
