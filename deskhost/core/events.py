"""
Process-wide lifecycle event bus.

Publishers call :meth:`EventBus.publish`; subscribers register per event name
(or for every event) and receive everything published after they subscribe.
Delivery goes through a single pending queue so that every subscriber sees
events in publish order, including events published from inside a handler.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

__all__ = [
    "EVENT_SCHEMA_VERSION",
    "EventBus",
    "EventName",
    "LifecycleEvent",
    "FIRE_ONCE_EVENTS",
]

logger = logging.getLogger(__name__)

EVENT_SCHEMA_VERSION = 2


class EventName(str, Enum):
    IPC_REGISTERED = "ipcRegistered"
    INSTALL_STAGE_CHANGED = "installStageChanged"
    LOADED = "loaded"
    SERVER_CRASHED = "serverCrashed"
    READY_PROBE = "readyProbe"
    # v2
    SHELL_ERROR = "shellError"


FIRE_ONCE_EVENTS = frozenset({EventName.IPC_REGISTERED, EventName.LOADED})

Handler = Callable[["LifecycleEvent"], None]


def _freeze(payload: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(payload or {}))


@dataclass(frozen=True)
class LifecycleEvent:
    name: EventName
    payload: Mapping[str, Any] = field(default_factory=lambda: _freeze(None))
    timestamp: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name.value,
            "payload": dict(self.payload),
            "timestamp": self.timestamp,
            "version": EVENT_SCHEMA_VERSION,
        }


class EventBus:
    """Thread-safe typed publish/subscribe channel."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: Dict[EventName, List[Handler]] = {}
        self._wildcard: List[Handler] = []
        self._fired: set[EventName] = set()
        self._pending: Deque[LifecycleEvent] = deque()
        self._draining = False

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------
    def subscribe(self, name: EventName | str, handler: Handler) -> Callable[[], None]:
        event = EventName(name)
        with self._lock:
            self._subs.setdefault(event, []).append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(event, handler)

        return _unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._wildcard.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._wildcard:
                    self._wildcard.remove(handler)

        return _unsubscribe

    def unsubscribe(self, name: EventName | str, handler: Handler) -> None:
        event = EventName(name)
        with self._lock:
            handlers = self._subs.get(event)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    self._subs.pop(event, None)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def has_fired(self, name: EventName | str) -> bool:
        with self._lock:
            return EventName(name) in self._fired

    def publish(
        self, name: EventName | str, payload: Optional[Mapping[str, Any]] = None
    ) -> Optional[LifecycleEvent]:
        """Queue an event for delivery; returns ``None`` for a redundant fire-once event."""
        event_name = EventName(name)
        event = LifecycleEvent(event_name, _freeze(payload))
        with self._lock:
            if event_name in FIRE_ONCE_EVENTS and event_name in self._fired:
                logger.debug("Ignoring repeated fire-once event %s", event_name.value)
                return None
            self._fired.add(event_name)
            self._pending.append(event)
            if self._draining:
                return event
            self._draining = True
        self._drain()
        return event

    def _drain(self) -> None:
        try:
            while True:
                with self._lock:
                    if not self._pending:
                        self._draining = False
                        return
                    event = self._pending.popleft()
                    listeners = list(self._subs.get(event.name, ())) + list(self._wildcard)
                for handler in listeners:
                    try:
                        handler(event)
                    except Exception:
                        logger.exception(
                            "Event handler %r failed for %s", handler, event.name.value
                        )
        except BaseException:
            # Queued events stay pending for the next publish to deliver.
            with self._lock:
                self._draining = False
            raise

    # ------------------------------------------------------------------
    # asyncio helpers
    # ------------------------------------------------------------------
    async def wait_for(
        self, name: EventName | str, timeout: Optional[float] = None
    ) -> LifecycleEvent:
        """Wait for the next ``name`` event published after this call."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[LifecycleEvent] = loop.create_future()

        def _resolve(event: LifecycleEvent) -> None:
            if not future.done():
                future.set_result(event)

        def _on_event(event: LifecycleEvent) -> None:
            loop.call_soon_threadsafe(_resolve, event)

        unsubscribe = self.subscribe(name, _on_event)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            unsubscribe()
