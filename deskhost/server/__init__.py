from deskhost.server.output import LoggingSink, LogSink, OutputTail
from deskhost.server.probe import HttpReadinessProbe, ProbeSchedule, wait_until_ready
from deskhost.server.supervisor import (
    LaunchSpec,
    ProcessSupervisor,
    RestartPolicy,
    ServerPhase,
    ServerProcessHandle,
)

__all__ = [
    "HttpReadinessProbe",
    "LaunchSpec",
    "LogSink",
    "LoggingSink",
    "OutputTail",
    "ProbeSchedule",
    "ProcessSupervisor",
    "RestartPolicy",
    "ServerPhase",
    "ServerProcessHandle",
    "wait_until_ready",
]
