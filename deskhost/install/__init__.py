from deskhost.install.lock import InstallLock
from deskhost.install.machine import InstallationStateMachine, InvalidTransition
from deskhost.install.state import (
    Failed,
    Installed,
    Installing,
    InstallationState,
    NotInstalled,
    Validating,
)
from deskhost.install.steps import InstallStep, StepContext, default_steps

__all__ = [
    "Failed",
    "InstallLock",
    "InstallStep",
    "Installed",
    "Installing",
    "InstallationState",
    "InstallationStateMachine",
    "InvalidTransition",
    "NotInstalled",
    "StepContext",
    "Validating",
    "default_steps",
]
