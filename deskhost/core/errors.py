"""Error taxonomy shared by the installer, the supervisor and the IPC layer."""

from __future__ import annotations

import errno
from enum import Enum
from typing import Any, Dict, Optional


class InstallErrorKind(str, Enum):
    PATH_UNWRITABLE = "PathUnwritable"
    DISK_FULL = "DiskFull"
    NETWORK_FAILURE = "NetworkFailure"
    VERSION_MISMATCH = "VersionMismatch"
    PERMISSION_DENIED = "PermissionDenied"
    INCOMPATIBLE_PLATFORM = "IncompatiblePlatform"
    TRANSIENT_IO = "TransientIO"
    LOCK_CONTENTION = "LockContention"
    CANCELLED = "Cancelled"


class ServerErrorKind(str, Enum):
    SPAWN_FAILED = "SpawnFailed"
    READINESS_TIMEOUT = "ReadinessTimeout"
    CRASH_LOOP = "CrashLoop"
    PORT_IN_USE = "PortInUse"
    MISSING_DEPENDENCY = "MissingDependency"
    CRASHED = "Crashed"


class IpcErrorKind(str, Enum):
    DUPLICATE_REGISTRATION = "DuplicateRegistration"
    PHASE_VIOLATION = "PhaseViolation"
    HANDLER_NOT_FOUND = "HandlerNotFound"
    HANDLER_ERROR = "HandlerError"


RECOVERABLE_INSTALL_KINDS = frozenset(
    {
        InstallErrorKind.NETWORK_FAILURE,
        InstallErrorKind.TRANSIENT_IO,
        InstallErrorKind.LOCK_CONTENTION,
        InstallErrorKind.CANCELLED,
    }
)

# Exit codes with a deterministic cause; respawning will not help.
NON_RESTARTABLE_SERVER_KINDS = frozenset(
    {
        ServerErrorKind.PORT_IN_USE,
        ServerErrorKind.MISSING_DEPENDENCY,
        ServerErrorKind.SPAWN_FAILED,
    }
)


class ShellError(Exception):
    """Base class for every structured failure raised by deskhost."""

    domain = "shell"

    def __init__(
        self,
        kind: Enum | str,
        message: str = "",
        *,
        recoverable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        self.message = message or str(getattr(kind, "value", kind))
        self.recoverable = bool(recoverable)
        self.details: Dict[str, Any] = dict(details or {})
        super().__init__(self.message)

    @property
    def kind_name(self) -> str:
        return str(getattr(self.kind, "value", self.kind))

    def as_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "domain": self.domain,
            "kind": self.kind_name,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind_name!r}, {self.message!r})"


class InstallationError(ShellError):
    domain = "install"

    def __init__(
        self,
        kind: InstallErrorKind,
        message: str = "",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            kind,
            message,
            recoverable=kind in RECOVERABLE_INSTALL_KINDS,
            details=details,
        )

    @classmethod
    def from_os_error(
        cls, exc: OSError, *, context: str = ""
    ) -> "InstallationError":
        """Classify an ``OSError`` raised by an install step."""
        code = exc.errno
        if code == errno.ENOSPC:
            kind = InstallErrorKind.DISK_FULL
        elif code in (errno.EACCES, errno.EPERM):
            kind = InstallErrorKind.PERMISSION_DENIED
        elif code == errno.EROFS:
            kind = InstallErrorKind.PATH_UNWRITABLE
        else:
            kind = InstallErrorKind.TRANSIENT_IO
        prefix = f"{context}: " if context else ""
        details: Dict[str, Any] = {"errno": code}
        if exc.filename:
            details["path"] = str(exc.filename)
        return cls(kind, f"{prefix}{exc.strerror or exc}", details=details)


class ServerError(ShellError):
    domain = "server"

    def __init__(
        self,
        kind: ServerErrorKind,
        message: str = "",
        *,
        exit_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        if exit_code is not None:
            merged["exit_code"] = exit_code
        super().__init__(
            kind,
            message,
            recoverable=kind not in NON_RESTARTABLE_SERVER_KINDS
            and kind is not ServerErrorKind.CRASH_LOOP,
            details=merged,
        )
        self.exit_code = exit_code


class IpcError(ShellError):
    domain = "ipc"

    def __init__(
        self,
        kind: IpcErrorKind,
        message: str = "",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(kind, message, recoverable=False, details=details)


class FatalError(ShellError):
    """Raised when the shell cannot be assembled at all (bad config, bad paths)."""

    domain = "fatal"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__("Fatal", message, recoverable=False, details=details)
