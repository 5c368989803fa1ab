from __future__ import annotations

import asyncio
import threading

import pytest

from deskhost.core.events import EVENT_SCHEMA_VERSION, EventBus, EventName


def test_subscribers_only_see_events_after_subscribing():
    bus = EventBus()
    bus.publish(EventName.SERVER_CRASHED, {"exit_code": 1})
    seen = []
    bus.subscribe(EventName.SERVER_CRASHED, seen.append)
    bus.publish(EventName.SERVER_CRASHED, {"exit_code": 2})
    assert [event.payload["exit_code"] for event in seen] == [2]


def test_fire_once_events_are_ignored_after_first_publish():
    bus = EventBus()
    seen = []
    bus.subscribe(EventName.LOADED, seen.append)
    first = bus.publish(EventName.LOADED, {"url": "a"})
    second = bus.publish(EventName.LOADED, {"url": "b"})
    assert first is not None
    assert second is None
    assert len(seen) == 1
    assert bus.has_fired(EventName.LOADED)


def test_nested_publish_is_delivered_in_publish_order():
    bus = EventBus()
    order_a, order_b = [], []

    def first_handler(event):
        order_a.append(event.name.value)
        if event.name is EventName.IPC_REGISTERED:
            bus.publish(EventName.READY_PROBE)

    bus.subscribe_all(first_handler)
    bus.subscribe_all(lambda event: order_b.append(event.name.value))
    bus.publish(EventName.IPC_REGISTERED)
    assert order_a == ["ipcRegistered", "readyProbe"]
    assert order_b == order_a


def test_handler_exception_does_not_stop_delivery(caplog):
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(EventName.SHELL_ERROR, broken)
    bus.subscribe(EventName.SHELL_ERROR, seen.append)
    with caplog.at_level("ERROR"):
        bus.publish(EventName.SHELL_ERROR, {"message": "x"})
    assert len(seen) == 1
    assert "Event handler" in caplog.text


def test_unsubscribe_and_payload_is_read_only():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe("readyProbe", seen.append)
    event = bus.publish("readyProbe", {"attempts": 3})
    unsubscribe()
    bus.publish("readyProbe", {"attempts": 4})
    assert len(seen) == 1
    with pytest.raises(TypeError):
        event.payload["attempts"] = 5  # type: ignore[index]
    assert event.as_dict()["version"] == EVENT_SCHEMA_VERSION


def test_unknown_event_name_is_rejected():
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.publish("serverExploded")


def test_wait_for_resolves_from_another_thread():
    bus = EventBus()

    async def _run():
        waiter = asyncio.create_task(bus.wait_for(EventName.READY_PROBE, timeout=2.0))
        await asyncio.sleep(0.01)
        threading.Thread(
            target=bus.publish, args=(EventName.READY_PROBE, {"attempts": 1})
        ).start()
        return await waiter

    event = asyncio.run(_run())
    assert event.payload["attempts"] == 1


def test_wait_for_times_out():
    bus = EventBus()

    async def _run():
        await bus.wait_for(EventName.LOADED, timeout=0.05)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(_run())


def test_cancelled_handler_does_not_wedge_the_bus():
    bus = EventBus()
    seen = []

    def cancelled(event):
        raise asyncio.CancelledError()

    bus.subscribe(EventName.SERVER_CRASHED, cancelled)
    bus.subscribe_all(lambda event: seen.append(event.name.value))

    with pytest.raises(asyncio.CancelledError):
        bus.publish(EventName.SERVER_CRASHED, {"exit_code": 1})
    bus.publish(EventName.READY_PROBE, {"attempts": 1})
    assert seen == ["readyProbe"]
