from deskhost.ipc.registry import (
    PHASE_1,
    PHASE_2,
    CapabilityRegistration,
    CapabilityRegistry,
    error_envelope,
)

__all__ = [
    "PHASE_1",
    "PHASE_2",
    "CapabilityRegistration",
    "CapabilityRegistry",
    "error_envelope",
]
