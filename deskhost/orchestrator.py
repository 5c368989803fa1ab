"""
Startup sequencing.

The :class:`Orchestrator` registers the phase-1 capabilities, drives the
installation state machine, launches the backend through the supervisor,
registers the phase-2 capabilities once the backend answers and publishes
``loaded``. All shared collaborators live on an explicit
:class:`ShellContext` rather than module-level singletons.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

import deskhost
from deskhost.config.ports import base_url, select_port
from deskhost.config.settings import ShellConfig
from deskhost.core.errors import FatalError, InstallErrorKind, ServerError, ServerErrorKind
from deskhost.core.events import EventBus, EventName, LifecycleEvent
from deskhost.core.progress import ProgressStream
from deskhost.install.machine import InstallationStateMachine, InvalidTransition
from deskhost.install.state import Failed, Installed, InstallationState
from deskhost.install.steps import InstallStep, venv_dir, venv_python
from deskhost.ipc.capabilities import (
    register_phase1_capabilities,
    register_phase2_capabilities,
)
from deskhost.ipc.registry import CapabilityRegistry
from deskhost.logging_config import new_run_id, reset_run_id, set_run_id
from deskhost.server.output import LogSink
from deskhost.server.probe import HttpReadinessProbe, wait_until_ready
from deskhost.server.supervisor import LaunchSpec, ProcessSupervisor

logger = logging.getLogger(__name__)

STAGE_READY = "ready"
STAGE_INSTALL_FAILED = "install_failed"
STAGE_SERVER_FAILED = "server_failed"
STAGE_TIMEOUT = "timeout"
STAGE_CANCELLED = "cancelled"


def _resolve_base_path(path: Path) -> Path:
    try:
        return Path(path).expanduser().resolve()
    except (OSError, RuntimeError) as exc:
        raise FatalError(
            f"Cannot resolve install location {path}: {exc}", details={"path": str(path)}
        ) from exc


@dataclass
class ShellContext:
    config: ShellConfig
    bus: EventBus
    progress: ProgressStream
    registry: CapabilityRegistry
    machine: InstallationStateMachine
    supervisor: ProcessSupervisor
    transport: Optional[httpx.AsyncBaseTransport] = None
    _probes: List[HttpReadinessProbe] = field(default_factory=list, repr=False)
    _closed: bool = field(default=False, repr=False)

    @classmethod
    def create(
        cls,
        config: ShellConfig,
        *,
        steps: Optional[Sequence[InstallStep]] = None,
        sink: Optional[LogSink] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ShellContext":
        """Build every collaborator once; raises :class:`FatalError` on unusable config."""
        if not config.uses_external_server:
            config = config.with_overrides(base_path=_resolve_base_path(config.base_path))
        bus = EventBus()
        progress = ProgressStream()
        return cls(
            config=config,
            bus=bus,
            progress=progress,
            registry=CapabilityRegistry(bus),
            machine=InstallationStateMachine(config, bus, progress, steps=steps),
            supervisor=ProcessSupervisor(config, bus, sink=sink),
            transport=transport,
        )

    def http_client(self, **kwargs: Any) -> httpx.AsyncClient:
        kwargs.setdefault("transport", self.transport)
        return httpx.AsyncClient(**kwargs)

    def readiness_probe(self, url: str) -> HttpReadinessProbe:
        probe = HttpReadinessProbe(
            url,
            request_timeout=self.config.probe_request_timeout,
            transport=self.transport,
        )
        self._probes.append(probe)
        return probe

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.supervisor.shutdown()
        for probe in self._probes:
            await probe.aclose()
        self._probes.clear()
        self.progress.close()


@dataclass
class StartupResult:
    ok: bool
    stage: str
    error: Optional[Dict[str, Any]] = None
    url: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok, "stage": self.stage}
        if self.error is not None:
            payload["error"] = self.error
        if self.url is not None:
            payload["url"] = self.url
        return payload


class Orchestrator:
    def __init__(
        self,
        ctx: ShellContext,
        *,
        launch_builder: Optional[Callable[[Installed], LaunchSpec]] = None,
    ) -> None:
        self.ctx = ctx
        self.run_id = new_run_id()
        self.server_url: Optional[str] = None
        self.result: Optional[StartupResult] = None
        self._launch_builder = launch_builder
        self._phase1_registered = False
        self._phase2_registered = False
        self._sequence_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def run(self) -> StartupResult:
        """Run the full startup sequence once and report how far it got."""
        token = set_run_id(self.run_id)
        try:
            logger.info("Startup sequence begins (run %s)", self.run_id)
            self._register_phase1()
            if self.ctx.config.uses_external_server:
                result = await self._attach_external()
            else:
                result = await self._sequence(reset_failed=False)
            logger.info("Startup sequence finished: %s", result.stage)
            return result
        finally:
            reset_run_id(token)

    async def retry(self) -> StartupResult:
        """Re-run installation after a recoverable failure and continue sequencing."""
        state = self.ctx.machine.state
        if isinstance(state, Failed) and not state.recoverable:
            logger.warning("Retry refused: %s is not recoverable (reset first)", state.kind)
            return self._record(
                StartupResult(False, STAGE_INSTALL_FAILED, error=self._failure_error(state))
            )
        token = set_run_id(self.run_id)
        try:
            logger.info("Retrying startup from %s", state.tag)
            return await self._sequence(reset_failed=True)
        finally:
            reset_run_id(token)

    async def restart_server(self) -> StartupResult:
        """Clear a crash-loop verdict and relaunch the backend from the finished install.

        A successful relaunch completes sequencing the same way ``run()`` does,
        so the phase-2 capabilities become reachable.
        """
        state = self.ctx.machine.state
        if self.ctx.config.uses_external_server:
            raise ServerError(
                ServerErrorKind.SPAWN_FAILED,
                "The backend is managed externally and cannot be restarted from here",
                details={"url": self.ctx.config.external_server_url},
            )
        if not isinstance(state, Installed):
            raise ServerError(
                ServerErrorKind.SPAWN_FAILED,
                f"Cannot restart the backend while the install is {state.tag}",
            )
        if self._sequence_lock.locked():
            raise InvalidTransition("Startup sequencing is already in progress")
        token = set_run_id(self.run_id)
        try:
            async with self._sequence_lock:
                logger.info("Troubleshooting: restarting backend on request")
                supervisor = self.ctx.supervisor
                supervisor.reset_failures()
                await supervisor.stop()
                return self._record(await self._launch(state))
        finally:
            reset_run_id(token)

    def attach_window(self, handler: Callable[[LifecycleEvent], None]) -> Callable[[], None]:
        """Replay the current install state to ``handler``, then stream live events."""
        snapshot = LifecycleEvent(
            EventName.INSTALL_STAGE_CHANGED,
            MappingProxyType({**self.ctx.machine.snapshot(), "replay": True}),
        )
        handler(snapshot)
        return self.ctx.bus.subscribe_all(handler)

    async def shutdown(self) -> None:
        logger.info("Shutting down shell")
        await self.ctx.close()

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------
    def _record(self, result: StartupResult) -> StartupResult:
        self.result = result
        return result

    def _register_phase1(self) -> None:
        if self._phase1_registered:
            return
        names = register_phase1_capabilities(self)
        self.ctx.registry.seal_phase1()
        self._phase1_registered = True
        self.ctx.bus.publish(EventName.IPC_REGISTERED, {"phase": 1, "capabilities": names})

    def _register_phase2(self) -> None:
        if self._phase2_registered:
            return
        names = register_phase2_capabilities(self)
        self._phase2_registered = True
        logger.info("Registered %d phase-2 capabilities", len(names))

    @staticmethod
    def _failure_error(state: Failed) -> Dict[str, Any]:
        return {
            "domain": "install",
            "kind": state.kind,
            "message": state.reason,
            "recoverable": state.recoverable,
            "step": state.step,
        }

    async def _sequence(self, *, reset_failed: bool) -> StartupResult:
        if self._sequence_lock.locked():
            raise InvalidTransition("Startup sequencing is already in progress")
        async with self._sequence_lock:
            machine = self.ctx.machine
            if reset_failed and isinstance(machine.state, Failed):
                machine.reset()
            if self.result is not None and self.result.ok:
                return self.result
            state = await machine.run()
            return self._record(await self._after_install(state))

    async def _after_install(self, state: InstallationState) -> StartupResult:
        if isinstance(state, Failed):
            stage = (
                STAGE_CANCELLED
                if state.kind == InstallErrorKind.CANCELLED.value
                else STAGE_INSTALL_FAILED
            )
            level = logging.WARNING if state.recoverable else logging.ERROR
            logger.log(level, "Installation failed (%s): %s", state.kind, state.reason)
            return StartupResult(False, stage, error=self._failure_error(state))
        if not isinstance(state, Installed):
            # reset() raced the run; nothing to launch.
            return StartupResult(False, STAGE_INSTALL_FAILED, error={"message": state.tag})
        return await self._launch(state)

    async def _launch(self, installed: Installed) -> StartupResult:
        spec = self.build_launch_spec(installed)
        config = self.ctx.config
        try:
            handle = await asyncio.wait_for(
                self.ctx.supervisor.start(spec), config.startup_timeout
            )
        except asyncio.TimeoutError:
            await self.ctx.supervisor.stop()
            error = ServerError(
                ServerErrorKind.READINESS_TIMEOUT,
                f"Backend did not become ready within {config.startup_timeout:.0f}s",
                details={"url": spec.base_url},
            )
            logger.error("%s", error.message)
            self.ctx.bus.publish(EventName.SHELL_ERROR, error.as_dict())
            return StartupResult(False, STAGE_TIMEOUT, error=error.as_dict())
        except ServerError as exc:
            logger.error("Backend failed to start: %s", exc.message)
            return StartupResult(False, STAGE_SERVER_FAILED, error=exc.as_dict())
        return self._enter_ready(handle.spec.base_url)

    def _enter_ready(self, url: str) -> StartupResult:
        self.server_url = url
        self._register_phase2()
        self.ctx.bus.publish(EventName.LOADED, {"url": url})
        return StartupResult(True, STAGE_READY, url=url)

    async def _attach_external(self) -> StartupResult:
        config = self.ctx.config
        url = config.external_server_url or ""
        probe = self.ctx.readiness_probe(f"{url}{config.readiness_path}")
        logger.info("Using externally managed backend at %s", url)
        try:
            attempts = await asyncio.wait_for(
                wait_until_ready(probe, self.ctx.supervisor.schedule), config.startup_timeout
            )
        except (ServerError, asyncio.TimeoutError) as exc:
            error = (
                exc
                if isinstance(exc, ServerError)
                else ServerError(
                    ServerErrorKind.READINESS_TIMEOUT,
                    f"External backend {url} not ready within {config.startup_timeout:.0f}s",
                )
            )
            logger.error("%s", error.message)
            self.ctx.bus.publish(EventName.SHELL_ERROR, error.as_dict())
            stage = STAGE_TIMEOUT if isinstance(exc, asyncio.TimeoutError) else STAGE_SERVER_FAILED
            return self._record(StartupResult(False, stage, error=error.as_dict()))
        self.ctx.bus.publish(
            EventName.READY_PROBE, {"url": probe.url, "base_url": url, "attempts": attempts}
        )
        return self._record(self._enter_ready(url))

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------
    def build_launch_spec(self, installed: Installed) -> LaunchSpec:
        if self._launch_builder is not None:
            return self._launch_builder(installed)
        config = self.ctx.config
        base = Path(installed.base_path)
        python = venv_python(venv_dir(base))
        executable = str(python) if python.exists() else sys.executable

        port, rolled = select_port(config.host, config.ports)
        if rolled:
            logger.warning("Preferred port %s busy; using %s", config.ports[0], port)
        url = base_url(config.host, port)

        package_root = str(Path(deskhost.__file__).resolve().parent.parent)
        pythonpath = os.pathsep.join(
            item for item in (package_root, os.environ.get("PYTHONPATH", "")) if item
        )
        env = {"PYTHONUNBUFFERED": "1", "PYTHONPATH": pythonpath, **config.backend_env}
        args = [
            "-m",
            config.backend_module,
            "--host",
            config.host,
            "--port",
            str(port),
            *config.backend_args,
        ]
        return LaunchSpec(
            executable=executable,
            args=args,
            probe=self.ctx.readiness_probe(f"{url}{config.readiness_path}"),
            env=env,
            cwd=base,
            base_url=url,
        )
