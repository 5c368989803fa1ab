"""Shared building blocks: event bus, progress stream and error taxonomy."""

from deskhost.core.errors import (
    FatalError,
    InstallationError,
    InstallErrorKind,
    IpcError,
    IpcErrorKind,
    ServerError,
    ServerErrorKind,
    ShellError,
)
from deskhost.core.events import EventBus, EventName, LifecycleEvent
from deskhost.core.progress import ProgressReport, ProgressStream

__all__ = [
    "EventBus",
    "EventName",
    "FatalError",
    "InstallErrorKind",
    "InstallationError",
    "IpcError",
    "IpcErrorKind",
    "LifecycleEvent",
    "ProgressReport",
    "ProgressStream",
    "ServerError",
    "ServerErrorKind",
    "ShellError",
]
