"""
Installation state machine.

``NotInstalled -> Validating -> Installing(1..N) -> Installed``, with ``Failed``
reachable from every non-terminal state. ``Installed`` and ``Failed`` only
leave through :meth:`InstallationStateMachine.reset`. Every transition
publishes one ``installStageChanged`` event and one progress report.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import psutil

from deskhost.config.settings import ShellConfig
from deskhost.core.errors import InstallationError, InstallErrorKind
from deskhost.core.events import EventBus, EventName
from deskhost.core.progress import ProgressStream
from deskhost.install.lock import InstallLock
from deskhost.install.state import (
    Failed,
    Installed,
    Installing,
    InstallationState,
    NotInstalled,
    Validating,
    can_transition,
    is_terminal,
    stage_name,
    state_to_dict,
)
from deskhost.install.steps import (
    LAYOUT_VERSION,
    InstallJournal,
    InstallStep,
    StepContext,
    default_steps,
    read_marker,
)

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = ("linux", "darwin", "win32")


class InvalidTransition(RuntimeError):
    """Raised when code attempts a transition the state ordering forbids."""


def nearest_existing(path: Path) -> Path:
    current = path
    while not current.exists():
        if current.parent == current:
            break
        current = current.parent
    return current


class InstallationStateMachine:
    def __init__(
        self,
        config: ShellConfig,
        bus: EventBus,
        progress: ProgressStream,
        *,
        steps: Optional[Sequence[InstallStep]] = None,
        base_path: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.bus = bus
        self.progress = progress
        self.base_path = Path(base_path or config.base_path).expanduser()
        self.steps: List[InstallStep] = list(steps) if steps is not None else default_steps()
        self._state: InstallationState = NotInstalled()
        self._listeners: List[Callable[[InstallationState], None]] = []
        self._job: Optional[asyncio.Task] = None
        self._cancel_requested = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> InstallationState:
        return self._state

    def snapshot(self) -> dict:
        return state_to_dict(self._state)

    def _transition(self, new: InstallationState, message: str = "") -> None:
        if not can_transition(self._state, new):
            raise InvalidTransition(f"{self._state.tag} -> {new.tag} is not allowed")
        self._state = new
        self._announce(message)

    def _announce(self, message: str) -> None:
        state = self._state
        payload = state_to_dict(state)
        logger.info("Install state -> %s %s", state.tag, message or "")
        self.progress.report(stage_name(state), self._overall_percent(), message or state.tag)
        self.bus.publish(EventName.INSTALL_STAGE_CHANGED, payload)
        for listener in list(self._listeners):
            listener(state)

    def _overall_percent(self, step_percent: int = 0) -> int:
        state = self._state
        if isinstance(state, Installed):
            return 100
        if isinstance(state, Installing) and state.total:
            done = (state.index - 1) * 100 + step_percent
            return int(done / state.total)
        return 0

    def add_listener(self, listener: Callable[[InstallationState], None]) -> None:
        self._listeners.append(listener)

    def reset(self) -> None:
        """Return to ``NotInstalled``; the only way out of a terminal state."""
        if self._job is not None and not self._job.done():
            raise InvalidTransition("Cannot reset while an installation is running")
        self._state = NotInstalled()
        self._cancel_requested = False
        self._announce("reset")

    def cancel(self) -> bool:
        """Request cancellation of the running installation."""
        if self._job is None or self._job.done():
            return False
        self._cancel_requested = True
        self._job.cancel()
        return True

    def _fail(self, error: InstallationError, step: Optional[str] = None) -> None:
        if is_terminal(self._state):
            return
        if step is None and isinstance(self._state, Installing):
            step = self._state.step
        self._transition(
            Failed(
                reason=error.message,
                kind=error.kind_name,
                recoverable=error.recoverable,
                step=step,
            ),
            error.message,
        )
        self.bus.publish(EventName.SHELL_ERROR, {**error.as_dict(), "step": step})

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------
    async def run(self) -> InstallationState:
        """Drive the machine to ``Installed`` or ``Failed`` and return that state."""
        if is_terminal(self._state):
            return self._state
        if self._job is not None and not self._job.done():
            raise InvalidTransition("Installation already running")
        self._cancel_requested = False
        self._job = asyncio.ensure_future(self._execute())
        try:
            await self._job
        except asyncio.CancelledError:
            self._fail(
                InstallationError(InstallErrorKind.CANCELLED, "Installation cancelled")
            )
            if not self._cancel_requested:
                raise
        except InstallationError as exc:
            logger.warning("Installation failed: %s", exc.message)
            self._fail(exc)
        except OSError as exc:
            error = InstallationError.from_os_error(exc)
            logger.warning("Installation failed: %s", error.message)
            self._fail(error)
        return self._state

    async def _execute(self) -> None:
        self._transition(Validating(), f"Validating {self.base_path}")
        await asyncio.to_thread(self.validate)

        lock = InstallLock(self.base_path)
        await lock.acquire(self.config.lock_wait)
        try:
            journal = InstallJournal(self.base_path)
            total = len(self.steps)
            for index, step in enumerate(self.steps, start=1):
                await self._run_step(step, index, total, journal)
        finally:
            lock.release()
        self._transition(Installed(base_path=str(self.base_path)), "Installation complete")

    async def _run_step(
        self, step: InstallStep, index: int, total: int, journal: InstallJournal
    ) -> None:
        self._transition(
            Installing(step=step.name, index=index, total=total), step.title
        )

        def _report(percent: int, message: str) -> None:
            percent = max(0, min(100, int(percent)))
            current = self._state
            if isinstance(current, Installing) and percent > current.percent:
                # In-step progress: state advances silently, UI gets a report.
                self._state = Installing(current.step, current.index, current.total, percent)
            self.progress.report(
                stage_name(self._state), self._overall_percent(percent), message
            )

        ctx = StepContext(
            base_path=self.base_path,
            config=self.config,
            journal=journal,
            step=step.name,
            report=_report,
        )
        done = journal.is_done(step.name)
        if done and await asyncio.to_thread(step.verify, ctx):
            logger.info("Step %s already complete; verified", step.name)
            _report(100, f"{step.title}: already complete")
            return
        if done:
            logger.warning("Step %s recorded complete but failed verification; redoing", step.name)
            journal.clear_step(step.name)
        await asyncio.to_thread(step.discard, ctx)
        await step.run(ctx)
        if not await asyncio.to_thread(step.verify, ctx):
            raise InstallationError(
                InstallErrorKind.TRANSIENT_IO,
                f"{step.title}: output failed verification",
            )
        journal.mark_done(step.name)
        _report(100, f"{step.title}: done")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(self) -> None:
        """Raise :class:`InstallationError` when the target cannot be installed to."""
        if not sys.platform.startswith(SUPPORTED_PLATFORMS):
            raise InstallationError(
                InstallErrorKind.INCOMPATIBLE_PLATFORM,
                f"Platform {sys.platform!r} is not supported",
            )
        self._check_writable()
        self._check_disk_space()
        self._check_conflicts()

    def _check_writable(self) -> None:
        target = self.base_path
        anchor = nearest_existing(target)
        if anchor.exists() and not anchor.is_dir():
            raise InstallationError(
                InstallErrorKind.PATH_UNWRITABLE,
                f"{anchor} exists and is not a directory",
                details={"path": str(anchor)},
            )
        if not os.access(anchor, os.W_OK | os.X_OK):
            raise InstallationError(
                InstallErrorKind.PERMISSION_DENIED,
                f"No write permission for {anchor}",
                details={"path": str(anchor)},
            )
        try:
            target.mkdir(parents=True, exist_ok=True)
            probe = target / f".write-probe-{uuid.uuid4().hex[:8]}"
            probe.write_bytes(b"ok")
            probe.unlink()
        except OSError as exc:
            raise InstallationError.from_os_error(exc, context="write check") from exc

    def _check_disk_space(self) -> None:
        try:
            usage = psutil.disk_usage(str(nearest_existing(self.base_path)))
        except OSError as exc:
            raise InstallationError.from_os_error(exc, context="disk check") from exc
        if usage.free < self.config.min_free_bytes:
            raise InstallationError(
                InstallErrorKind.DISK_FULL,
                f"Only {usage.free // (1024 * 1024)} MiB free; "
                f"{self.config.min_free_bytes // (1024 * 1024)} MiB required",
                details={"free": usage.free, "required": self.config.min_free_bytes},
            )

    def _check_conflicts(self) -> None:
        marker = read_marker(self.base_path)
        if marker is None:
            return
        version = marker.get("layout_version")
        if version != LAYOUT_VERSION:
            raise InstallationError(
                InstallErrorKind.VERSION_MISMATCH,
                f"Existing installation uses layout {version}; expected {LAYOUT_VERSION}",
                details={"found": version, "expected": LAYOUT_VERSION},
            )
