"""HTTP readiness probing with exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from deskhost.config.settings import ShellConfig
from deskhost.core.errors import ServerError, ServerErrorKind

logger = logging.getLogger(__name__)


class ReadinessProbe(Protocol):
    url: str

    async def check(self, timeout: Optional[float] = None) -> bool: ...

    async def aclose(self) -> None: ...


class HttpReadinessProbe:
    """GET ``url``; any 2xx means ready, anything else (or no answer) means not yet."""

    def __init__(
        self,
        url: str,
        *,
        request_timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.request_timeout = request_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.attempts = 0
        self.last_error: Optional[str] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport, timeout=self.request_timeout
            )
        return self._client

    async def check(self, timeout: Optional[float] = None) -> bool:
        self.attempts += 1
        try:
            response = await self._get_client().get(
                self.url, timeout=timeout or self.request_timeout
            )
        except httpx.HTTPError as exc:
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.debug("Readiness probe %s failed: %s", self.url, self.last_error)
            return False
        if response.is_success:
            self.last_error = None
            return True
        self.last_error = f"HTTP {response.status_code}"
        return False

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


@dataclass(frozen=True)
class ProbeSchedule:
    initial_interval: float = 0.25
    backoff: float = 2.0
    max_interval: float = 2.0
    timeout: float = 120.0

    @classmethod
    def from_config(cls, config: ShellConfig) -> "ProbeSchedule":
        return cls(
            initial_interval=config.probe_initial_interval,
            backoff=config.probe_backoff,
            max_interval=config.probe_max_interval,
            timeout=config.readiness_timeout,
        )


async def wait_until_ready(probe: ReadinessProbe, schedule: ProbeSchedule) -> int:
    """Poll ``probe`` until it succeeds; returns the number of attempts.

    Raises ``ServerError(ReadinessTimeout)`` once ``schedule.timeout`` has
    elapsed. Waits are capped at the remaining time, so the call returns no
    later than the timeout plus one interval.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + schedule.timeout
    interval = schedule.initial_interval
    attempts = 0
    request_timeout = getattr(probe, "request_timeout", schedule.max_interval)
    while True:
        attempts += 1
        remaining = deadline - loop.time()
        per_request = max(0.05, min(request_timeout, remaining))
        if await probe.check(per_request):
            logger.info("Readiness probe %s succeeded after %d attempt(s)", probe.url, attempts)
            return attempts
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise ServerError(
                ServerErrorKind.READINESS_TIMEOUT,
                f"{probe.url} not ready after {schedule.timeout:.1f}s ({attempts} attempts)",
                details={"attempts": attempts, "url": probe.url},
            )
        await asyncio.sleep(min(interval, remaining))
        interval = min(interval * schedule.backoff, schedule.max_interval)
