"""
Two-phase capability registration and dispatch.

Phase-1 capabilities (diagnostics, troubleshooting, install control) are
registered before the orchestrator starts installing and are sealed after
that. Phase-2 capabilities depend on a serving backend and are refused until
``loaded`` or ``readyProbe`` has been observed. A name can be registered
only once per process.
"""

from __future__ import annotations

import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from deskhost.core.errors import IpcError, IpcErrorKind, ShellError
from deskhost.core.events import EventBus, EventName, LifecycleEvent

logger = logging.getLogger(__name__)

PHASE_1 = 1
PHASE_2 = 2


@dataclass(frozen=True)
class CapabilityRegistration:
    phase: int
    name: str
    handler: Callable[..., Any]
    registered_at: float = field(default_factory=time.time)


class ErrorBody(BaseModel):
    kind: str
    message: str
    details: Optional[Dict[str, Any]] = None


def error_envelope(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, ShellError):
        body = ErrorBody(kind=exc.kind_name, message=exc.message, details=exc.details or None)
    else:
        body = ErrorBody(
            kind=IpcErrorKind.HANDLER_ERROR.value,
            message=str(exc) or type(exc).__name__,
            details={"type": type(exc).__name__},
        )
    return {"ok": False, "error": body.model_dump(exclude_none=True)}


class CapabilityRegistry:
    def __init__(self, bus: EventBus) -> None:
        self.bus = bus
        self._lock = threading.Lock()
        self._table: Dict[str, CapabilityRegistration] = {}
        self._phase1_sealed = False
        self._ready_seen = bus.has_fired(EventName.LOADED) or bus.has_fired(
            EventName.READY_PROBE
        )
        bus.subscribe(EventName.LOADED, self._on_ready)
        bus.subscribe(EventName.READY_PROBE, self._on_ready)

    def _on_ready(self, event: LifecycleEvent) -> None:
        if not self._ready_seen:
            logger.info("Phase-2 registration opened by %s", event.name.value)
        self._ready_seen = True

    @property
    def ready_seen(self) -> bool:
        return self._ready_seen

    @property
    def phase1_sealed(self) -> bool:
        return self._phase1_sealed

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def _reject(self, error: IpcError) -> IpcError:
        logger.error("Capability registration rejected: %s", error.message)
        self.bus.publish(EventName.SHELL_ERROR, error.as_dict())
        return error

    def _register(self, phase: int, name: str, handler: Callable[..., Any]) -> CapabilityRegistration:
        with self._lock:
            existing = self._table.get(name)
            if existing is not None:
                error = IpcError(
                    IpcErrorKind.DUPLICATE_REGISTRATION,
                    f"Capability {name!r} is already registered (phase {existing.phase})",
                    details={"name": name, "phase": phase, "existing_phase": existing.phase},
                )
            else:
                registration = CapabilityRegistration(phase=phase, name=name, handler=handler)
                self._table[name] = registration
                error = None
        if error is not None:
            raise self._reject(error)
        logger.debug("Registered phase-%d capability %s", phase, name)
        return registration

    def register_phase1(self, name: str, handler: Callable[..., Any]) -> CapabilityRegistration:
        if self._phase1_sealed:
            raise self._reject(
                IpcError(
                    IpcErrorKind.PHASE_VIOLATION,
                    f"Phase-1 registration of {name!r} after startup sequencing began",
                    details={"name": name, "phase": PHASE_1},
                )
            )
        return self._register(PHASE_1, name, handler)

    def register_phase2(self, name: str, handler: Callable[..., Any]) -> CapabilityRegistration:
        if not self._ready_seen:
            raise self._reject(
                IpcError(
                    IpcErrorKind.PHASE_VIOLATION,
                    f"Phase-2 registration of {name!r} before the backend is ready",
                    details={"name": name, "phase": PHASE_2},
                )
            )
        return self._register(PHASE_2, name, handler)

    def seal_phase1(self) -> None:
        self._phase1_sealed = True

    def names(self, phase: Optional[int] = None) -> List[str]:
        with self._lock:
            return sorted(
                name for name, reg in self._table.items() if phase is None or reg.phase == phase
            )

    def get(self, name: str) -> Optional[CapabilityRegistration]:
        with self._lock:
            return self._table.get(name)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def invoke(self, name: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """Run a capability and return its raw result; errors propagate."""
        registration = self.get(name)
        if registration is None:
            raise IpcError(
                IpcErrorKind.HANDLER_NOT_FOUND,
                f"No capability named {name!r}",
                details={"name": name},
            )
        result = registration.handler(dict(payload or {}))
        if inspect.isawaitable(result):
            result = await result
        return result

    async def dispatch(self, name: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a capability and wrap the outcome in a response envelope."""
        try:
            data = await self.invoke(name, payload)
        except IpcError as exc:
            logger.error("IPC dispatch of %s failed: %s", name, exc.message)
            self.bus.publish(EventName.SHELL_ERROR, {**exc.as_dict(), "capability": name})
            return error_envelope(exc)
        except Exception as exc:
            logger.exception("Capability %s raised", name)
            self.bus.publish(
                EventName.SHELL_ERROR,
                {**error_envelope(exc)["error"], "capability": name},
            )
            return error_envelope(exc)
        return {"ok": True, "data": data}
