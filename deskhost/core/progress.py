"""Typed progress reports and the stream that carries them to consumers."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ProgressReport(BaseModel):
    """Wire shape of a progress message sent to the UI."""

    stage: str
    percent: int = Field(ge=0, le=100)
    message: str = ""
    timestamp: int = Field(default_factory=_now_ms)


class ProgressSubscription:
    """Bounded async iterator over progress reports.

    When the consumer falls behind, the oldest undelivered reports are dropped;
    the most recent report is always retained.
    """

    def __init__(self, stream: "ProgressStream", maxsize: int) -> None:
        self._stream = stream
        self._loop = asyncio.get_running_loop()
        self._buffer: Deque[ProgressReport] = deque(maxlen=max(1, int(maxsize)))
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    def _put(self, report: ProgressReport) -> None:
        if self._closed:
            return
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(report)
        self._ready.set()

    def _push(self, report: ProgressReport) -> None:
        try:
            self._loop.call_soon_threadsafe(self._put, report)
        except RuntimeError:
            # Consumer loop already closed.
            self._closed = True

    def _finish(self) -> None:
        self._closed = True
        self._ready.set()

    def close(self) -> None:
        self._stream._detach(self)
        self._finish()

    def __aiter__(self) -> "ProgressSubscription":
        return self

    async def __anext__(self) -> ProgressReport:
        while not self._buffer:
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()


class ProgressStream:
    """Fan-out channel of :class:`ProgressReport` values."""

    def __init__(self, *, default_maxsize: int = 64) -> None:
        self._lock = threading.Lock()
        self._subscriptions: List[ProgressSubscription] = []
        self._listeners: List[Callable[[ProgressReport], None]] = []
        self._latest: Optional[ProgressReport] = None
        self._default_maxsize = default_maxsize

    @property
    def latest(self) -> Optional[ProgressReport]:
        return self._latest

    def report(self, stage: str, percent: int, message: str = "") -> ProgressReport:
        clamped = max(0, min(100, int(percent)))
        report = ProgressReport(stage=stage, percent=clamped, message=message)
        self.publish(report)
        return report

    def publish(self, report: ProgressReport) -> None:
        with self._lock:
            self._latest = report
            subscriptions = list(self._subscriptions)
            listeners = list(self._listeners)
        for sub in subscriptions:
            sub._push(report)
        for listener in listeners:
            try:
                listener(report)
            except Exception:
                logger.exception("Progress listener %r failed", listener)

    def subscribe(self, maxsize: Optional[int] = None) -> ProgressSubscription:
        """Open an async subscription; must be called from inside an event loop."""
        sub = ProgressSubscription(self, maxsize or self._default_maxsize)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def add_listener(
        self, listener: Callable[[ProgressReport], None]
    ) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def _detach(self, sub: ProgressSubscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def close(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for sub in subscriptions:
            try:
                sub._loop.call_soon_threadsafe(sub._finish)
            except RuntimeError:
                sub._closed = True

    def snapshot(self) -> Optional[Dict[str, Any]]:
        latest = self._latest
        return latest.model_dump() if latest is not None else None
