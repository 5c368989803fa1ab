from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, List, Protocol

from deskhost.logging_config import SERVER_OUTPUT_LOGGER

logger = logging.getLogger(__name__)


class LogSink(Protocol):
    def write(self, stream: str, line: str) -> None: ...


class LoggingSink:
    """Forward backend output lines to the ``deskhost.server.output`` logger."""

    def __init__(self, name: str = SERVER_OUTPUT_LOGGER) -> None:
        self._logger = logging.getLogger(name)

    def write(self, stream: str, line: str) -> None:
        self._logger.info(line, extra={"stream": stream})


class OutputTail:
    """Fixed-size in-memory tail of one output stream."""

    def __init__(self, maxlen: int = 500) -> None:
        self._lines: Deque[str] = deque(maxlen=max(1, int(maxlen)))
        self.total = 0

    def append(self, line: str) -> None:
        self._lines.append(line)
        self.total += 1

    def lines(self, limit: int | None = None) -> List[str]:
        items = list(self._lines)
        return items[-limit:] if limit else items

    def __len__(self) -> int:
        return len(self._lines)


async def pump_stream(
    reader: asyncio.StreamReader, stream: str, tail: OutputTail, sink: LogSink
) -> None:
    """Copy ``reader`` line by line into ``tail`` and ``sink`` until EOF.

    A line longer than the reader limit is forwarded in limit-sized pieces.
    """
    sink_failed = False
    split = False
    while True:
        try:
            raw = await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            raw = exc.partial
        except asyncio.LimitOverrunError as exc:
            # readuntil() leaves the overlong data buffered.
            raw = await reader.read(max(1, exc.consumed))
            split = True
        else:
            if split and raw.strip(b"\r\n") == b"":
                # Terminator of a line already forwarded in pieces.
                split = False
                continue
            split = False
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        tail.append(line)
        try:
            sink.write(stream, line)
        except Exception:
            if not sink_failed:
                logger.exception("Output sink %r failed; further errors suppressed", sink)
                sink_failed = True
