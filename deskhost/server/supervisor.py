"""
Backend process supervisor.

Spawns the backend as a child process, forwards its output, waits for it to
answer its readiness endpoint, restarts it after unexpected exits (within a
bounded crash budget) and stops it cleanly. At most one non-terminal
:class:`ServerProcessHandle` exists at any time.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence

from deskhost.config.settings import ShellConfig
from deskhost.core.errors import (
    NON_RESTARTABLE_SERVER_KINDS,
    ServerError,
    ServerErrorKind,
)
from deskhost.core.events import EventBus, EventName
from deskhost.server.output import LoggingSink, LogSink, OutputTail, pump_stream
from deskhost.server.probe import ProbeSchedule, ReadinessProbe, wait_until_ready

logger = logging.getLogger(__name__)

_READER_LIMIT = 1024 * 1024
_READER_DRAIN_TIMEOUT = 2.0


class ServerPhase(str, Enum):
    STARTING = "Starting"
    READY = "Ready"
    CRASHED = "Crashed"
    STOPPING = "Stopping"
    STOPPED = "Stopped"


TERMINAL_PHASES = frozenset({ServerPhase.CRASHED, ServerPhase.STOPPED})


@dataclass
class LaunchSpec:
    executable: str
    args: Sequence[str]
    probe: ReadinessProbe
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[Path] = None
    base_url: str = ""


@dataclass(eq=False)
class ServerProcessHandle:
    spec: LaunchSpec
    pid: int
    restart_count: int = 0
    started_at: float = field(default_factory=time.time)
    phase: ServerPhase = ServerPhase.STARTING
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    stdout_tail: OutputTail = field(default_factory=OutputTail)
    stderr_tail: OutputTail = field(default_factory=OutputTail)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    _process: Any = field(default=None, repr=False)
    _exited: Optional[asyncio.Future] = field(default=None, repr=False)
    _readers: List[asyncio.Task] = field(default_factory=list, repr=False)
    _monitor: Optional[asyncio.Task] = field(default=None, repr=False)
    _expected_exit: bool = field(default=False, repr=False)

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def as_dict(self, tail: int = 20) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pid": self.pid,
            "phase": self.phase.value,
            "restart_count": self.restart_count,
            "started_at": self.started_at,
            "exit_code": self.exit_code,
            "error_kind": self.error_kind,
            "base_url": self.spec.base_url,
            "stdout_tail": self.stdout_tail.lines(tail),
            "stderr_tail": self.stderr_tail.lines(tail),
        }


class RestartPolicy:
    """Sliding-window crash budget with exponential backoff between restarts."""

    def __init__(
        self,
        max_crashes: int = 3,
        window: float = 300.0,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_crashes = max(1, int(max_crashes))
        self.window = float(window)
        self.backoff_initial = float(backoff_initial)
        self.backoff_max = float(backoff_max)
        self._clock = clock
        self._crashes: Deque[float] = deque()

    @classmethod
    def from_config(cls, config: ShellConfig) -> "RestartPolicy":
        return cls(
            max_crashes=config.max_crashes,
            window=config.crash_window,
            backoff_initial=config.restart_backoff_initial,
            backoff_max=config.restart_backoff_max,
        )

    def _prune(self, now: float) -> None:
        while self._crashes and now - self._crashes[0] > self.window:
            self._crashes.popleft()

    @property
    def crashes_in_window(self) -> int:
        self._prune(self._clock())
        return len(self._crashes)

    def record_crash(self) -> Optional[float]:
        """Record a crash; return the delay before restarting, or None for a crash loop."""
        now = self._clock()
        self._prune(now)
        self._crashes.append(now)
        count = len(self._crashes)
        if count >= self.max_crashes:
            return None
        return min(self.backoff_initial * (2 ** (count - 1)), self.backoff_max)

    def reset(self) -> None:
        self._crashes.clear()


class ProcessSupervisor:
    def __init__(
        self,
        config: ShellConfig,
        bus: EventBus,
        *,
        sink: Optional[LogSink] = None,
        restart_policy: Optional[RestartPolicy] = None,
        schedule: Optional[ProbeSchedule] = None,
    ) -> None:
        self.config = config
        self.bus = bus
        self.sink: LogSink = sink or LoggingSink()
        self.restart_policy = restart_policy or RestartPolicy.from_config(config)
        self.schedule = schedule or ProbeSchedule.from_config(config)
        self._lock = asyncio.Lock()
        self._current: Optional[ServerProcessHandle] = None
        self._spec: Optional[LaunchSpec] = None
        self._failed: Optional[ServerError] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._handles_spawned = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def current(self) -> Optional[ServerProcessHandle]:
        return self._current

    @property
    def failed(self) -> Optional[ServerError]:
        return self._failed

    @property
    def spawn_count(self) -> int:
        return self._handles_spawned

    def status(self) -> Dict[str, Any]:
        handle = self._current
        return {
            "phase": handle.phase.value if handle else ServerPhase.STOPPED.value,
            "handle": handle.as_dict() if handle else None,
            "failed": self._failed.as_dict() if self._failed else None,
            "crashes_in_window": self.restart_policy.crashes_in_window,
            "max_crashes": self.restart_policy.max_crashes,
            "spawn_count": self._handles_spawned,
        }

    def classify_exit(self, code: Optional[int]) -> ServerErrorKind:
        if code is None:
            return ServerErrorKind.CRASHED
        name = self.config.exit_codes.get(code)
        if name:
            try:
                return ServerErrorKind(name)
            except ValueError:
                logger.warning("Unknown error kind %r mapped for exit code %s", name, code)
        return ServerErrorKind.CRASHED

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------
    async def start(self, spec: LaunchSpec) -> ServerProcessHandle:
        """Spawn the backend and return its handle once it reports ready."""
        if self._failed is not None:
            raise self._failed
        self._cancel_restart()
        self._spec = spec
        return await self._run_until_ready(spec, restart_count=0)

    async def stop(
        self, handle: Optional[ServerProcessHandle] = None, timeout: Optional[float] = None
    ) -> Optional[ServerProcessHandle]:
        """Stop ``handle`` (default: the current one); always ends in ``Stopped``."""
        self._cancel_restart()
        target = handle or self._current
        if target is None:
            return None
        await self._stop_handle(target, self.config.grace_period if timeout is None else timeout)
        return target

    def reset_failures(self) -> None:
        """Clear a crash-loop verdict so the server may be started again."""
        if self._failed is not None:
            logger.info("Clearing server failure state (%s)", self._failed.kind_name)
        self._failed = None
        self.restart_policy.reset()

    async def restart(self) -> ServerProcessHandle:
        """Explicit user-requested restart of the last launched server."""
        if self._spec is None:
            raise ServerError(ServerErrorKind.SPAWN_FAILED, "No server has been launched yet")
        self.reset_failures()
        await self.stop()
        return await self.start(self._spec)

    async def shutdown(self) -> None:
        self._spec = None
        await self.stop()

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------
    def _spawn_kwargs(self) -> Dict[str, Any]:
        if os.name == "nt":
            import subprocess

            return {
                "creationflags": subprocess.CREATE_NEW_PROCESS_GROUP
                | subprocess.CREATE_NO_WINDOW
            }
        return {}

    async def _spawn(self, spec: LaunchSpec, restart_count: int) -> ServerProcessHandle:
        async with self._lock:
            current = self._current
            if current is not None and not current.terminal:
                logger.info("Stopping active server %s before starting a new one", current.id)
                await self._stop_handle(current, self.config.grace_period)
            env = dict(os.environ)
            env.update(spec.env)
            try:
                process = await asyncio.create_subprocess_exec(
                    spec.executable,
                    *spec.args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                    cwd=str(spec.cwd) if spec.cwd else None,
                    limit=_READER_LIMIT,
                    **self._spawn_kwargs(),
                )
            except OSError as exc:
                error = ServerError(
                    ServerErrorKind.SPAWN_FAILED,
                    f"Could not start {spec.executable}: {exc}",
                    details={"executable": spec.executable},
                )
                logger.error("%s", error.message)
                self.bus.publish(EventName.SHELL_ERROR, error.as_dict())
                raise error from exc

            tail_lines = self.config.output_tail_lines
            handle = ServerProcessHandle(
                spec=spec,
                pid=process.pid,
                restart_count=restart_count,
                stdout_tail=OutputTail(tail_lines),
                stderr_tail=OutputTail(tail_lines),
            )
            handle._process = process
            handle._exited = asyncio.get_running_loop().create_future()
            handle._readers = [
                asyncio.create_task(
                    pump_stream(process.stdout, "stdout", handle.stdout_tail, self.sink)
                ),
                asyncio.create_task(
                    pump_stream(process.stderr, "stderr", handle.stderr_tail, self.sink)
                ),
            ]
            handle._monitor = asyncio.create_task(self._monitor(handle))
            self._current = handle
            self._handles_spawned += 1
            logger.info(
                "Spawned backend pid=%s (restart %d): %s %s",
                process.pid,
                restart_count,
                spec.executable,
                " ".join(spec.args),
            )
            return handle

    async def _monitor(self, handle: ServerProcessHandle) -> None:
        code = await handle._process.wait()
        try:
            await asyncio.wait_for(
                asyncio.gather(*handle._readers, return_exceptions=True),
                _READER_DRAIN_TIMEOUT,
            )
        except asyncio.TimeoutError:
            # A grandchild may still hold the pipes open.
            for reader in handle._readers:
                reader.cancel()
        handle.exit_code = code
        if handle._exited is not None and not handle._exited.done():
            handle._exited.set_result(code)
        if handle._expected_exit:
            return

        was_ready = handle.phase is ServerPhase.READY
        kind = self.classify_exit(code)
        handle.phase = ServerPhase.CRASHED
        handle.error_kind = kind.value
        logger.warning(
            "Backend pid=%s exited unexpectedly with code %s (%s)", handle.pid, code, kind.value
        )
        self.bus.publish(
            EventName.SERVER_CRASHED,
            {
                "pid": handle.pid,
                "exit_code": code,
                "kind": kind.value,
                "restart_count": handle.restart_count,
                "was_ready": was_ready,
                "stderr_tail": handle.stderr_tail.lines(20),
            },
        )
        if was_ready:
            self._schedule_restart(handle)

    # ------------------------------------------------------------------
    # Readiness and restarts
    # ------------------------------------------------------------------
    async def _run_until_ready(
        self, spec: LaunchSpec, restart_count: int
    ) -> ServerProcessHandle:
        while True:
            handle = await self._spawn(spec, restart_count)
            try:
                await self._wait_ready(handle)
                return handle
            except ServerError as exc:
                if exc.kind is not ServerErrorKind.CRASHED or handle._expected_exit:
                    raise
                delay = self._restart_delay(handle)
            logger.info("Restarting backend in %.1fs", delay)
            await asyncio.sleep(delay)
            restart_count += 1

    async def _wait_ready(self, handle: ServerProcessHandle) -> None:
        probe_task = asyncio.create_task(wait_until_ready(handle.spec.probe, self.schedule))
        try:
            done, _ = await asyncio.wait(
                {probe_task, handle._exited}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            probe_task.cancel()
            await asyncio.gather(probe_task, return_exceptions=True)
            await self._abandon(handle, "readiness wait cancelled")
            raise

        if probe_task not in done:
            probe_task.cancel()
            await asyncio.gather(probe_task, return_exceptions=True)
            await asyncio.shield(handle._monitor)
            raise ServerError(
                ServerErrorKind.CRASHED,
                f"Backend exited with code {handle.exit_code} before becoming ready",
                exit_code=handle.exit_code,
            )

        error = probe_task.exception()
        if error is not None:
            await self._abandon(handle, str(error))
            if isinstance(error, ServerError):
                self.bus.publish(EventName.SHELL_ERROR, error.as_dict())
            raise error
        if not handle.alive:
            await asyncio.shield(handle._monitor)
            raise ServerError(
                ServerErrorKind.CRASHED,
                "Backend exited while readiness was confirmed",
                exit_code=handle.exit_code,
            )

        handle.phase = ServerPhase.READY
        payload = {
            "pid": handle.pid,
            "url": handle.spec.probe.url,
            "base_url": handle.spec.base_url,
            "restart_count": handle.restart_count,
            "attempts": probe_task.result(),
        }
        logger.info("Backend ready at %s (pid=%s)", handle.spec.base_url, handle.pid)
        self.bus.publish(EventName.READY_PROBE, payload)

    async def _abandon(self, handle: ServerProcessHandle, reason: str) -> None:
        """Force the child down after a failed/cancelled readiness wait."""
        logger.warning("Abandoning backend pid=%s: %s", handle.pid, reason)
        await self._stop_handle(handle, 0.0, final_phase=ServerPhase.CRASHED)

    def _restart_delay(self, handle: ServerProcessHandle) -> float:
        kind = ServerErrorKind(handle.error_kind or ServerErrorKind.CRASHED.value)
        if kind in NON_RESTARTABLE_SERVER_KINDS:
            error = ServerError(
                kind,
                f"Backend exited with code {handle.exit_code} ({kind.value}); not restarting",
                exit_code=handle.exit_code,
                details={"stderr_tail": handle.stderr_tail.lines(20)},
            )
            self.bus.publish(EventName.SHELL_ERROR, error.as_dict())
            raise error
        delay = self.restart_policy.record_crash()
        if delay is None:
            error = ServerError(
                ServerErrorKind.CRASH_LOOP,
                f"Backend crashed {self.restart_policy.crashes_in_window} times within "
                f"{self.restart_policy.window:.0f}s; automatic restarts stopped",
                exit_code=handle.exit_code,
                details={"restart_count": handle.restart_count},
            )
            self._failed = error
            logger.error("%s", error.message)
            self.bus.publish(EventName.SHELL_ERROR, error.as_dict())
            raise error
        return delay

    def _schedule_restart(self, handle: ServerProcessHandle) -> None:
        try:
            delay = self._restart_delay(handle)
        except ServerError:
            return
        spec = handle.spec
        count = handle.restart_count + 1
        self._restart_task = asyncio.create_task(self._restart_after(spec, delay, count))

    async def _restart_after(self, spec: LaunchSpec, delay: float, count: int) -> None:
        logger.info("Restarting backend in %.1fs (restart %d)", delay, count)
        await asyncio.sleep(delay)
        if self._spec is not spec:
            return
        try:
            await self._run_until_ready(spec, count)
        except ServerError as exc:
            logger.error("Automatic restart failed: %s", exc.message)

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------
    def _request_terminate(self, process: Any) -> None:
        try:
            if os.name == "nt":
                process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                process.terminate()
        except ProcessLookupError:
            pass

    async def _stop_handle(
        self,
        handle: ServerProcessHandle,
        grace: float,
        *,
        final_phase: ServerPhase = ServerPhase.STOPPED,
    ) -> None:
        if handle.phase is ServerPhase.STOPPED:
            return
        if handle.alive:
            handle._expected_exit = True
            handle.phase = ServerPhase.STOPPING
            process = handle._process
            if grace > 0:
                self._request_terminate(process)
                try:
                    await asyncio.wait_for(asyncio.shield(handle._exited), grace)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Backend pid=%s ignored terminate for %.1fs; killing", handle.pid, grace
                    )
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
        if handle._monitor is not None:
            await asyncio.shield(handle._monitor)
        handle.phase = final_phase
        logger.info("Backend pid=%s %s (exit code %s)", handle.pid, final_phase.value.lower(), handle.exit_code)
