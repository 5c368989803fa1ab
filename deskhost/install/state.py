"""Installation state variants and the ordering rules between them."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class NotInstalled:
    tag = "NotInstalled"


@dataclass(frozen=True)
class Validating:
    tag = "Validating"


@dataclass(frozen=True)
class Installing:
    step: str
    index: int
    total: int
    percent: int = 0

    tag = "Installing"


@dataclass(frozen=True)
class Installed:
    base_path: str

    tag = "Installed"


@dataclass(frozen=True)
class Failed:
    reason: str
    kind: str
    recoverable: bool
    step: Optional[str] = None

    tag = "Failed"


InstallationState = Union[NotInstalled, Validating, Installing, Installed, Failed]

TERMINAL_STATES = (Installed, Failed)


def is_terminal(state: InstallationState) -> bool:
    return isinstance(state, TERMINAL_STATES)


def _rank(state: InstallationState) -> tuple[int, int]:
    if isinstance(state, NotInstalled):
        return (0, 0)
    if isinstance(state, Validating):
        return (1, 0)
    if isinstance(state, Installing):
        return (2, state.index)
    return (3, 0)


def can_transition(current: InstallationState, new: InstallationState) -> bool:
    """Forward-only ordering; ``Failed`` is reachable from any non-terminal state."""
    if is_terminal(current):
        return False
    if isinstance(new, Failed):
        return True
    if isinstance(new, NotInstalled):
        return False
    if isinstance(current, Installing) and isinstance(new, Installing):
        # Same step may only advance its percent.
        if new.index == current.index:
            return new.step == current.step and new.percent >= current.percent
        return new.index > current.index
    return _rank(new) > _rank(current)


def state_to_dict(state: InstallationState) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"state": state.tag}
    payload.update(asdict(state))
    return payload


def stage_name(state: InstallationState) -> str:
    if isinstance(state, Installing):
        return f"installing:{state.step}"
    return state.tag[0].lower() + state.tag[1:]
