from __future__ import annotations

import logging
import platform
import socket
import sys
import time
from typing import TYPE_CHECKING, Any, Dict, Optional

import psutil

from deskhost import __version__
from deskhost.core.events import EVENT_SCHEMA_VERSION
from deskhost.install.machine import nearest_existing
from deskhost.logging_config import log_paths

if TYPE_CHECKING:
    from deskhost.orchestrator import ShellContext

logger = logging.getLogger(__name__)


def _disk(path) -> Dict[str, Any]:
    try:
        usage = psutil.disk_usage(str(nearest_existing(path)))
    except OSError as exc:
        return {"error": str(exc)}
    return {
        "total_gb": round(usage.total / 1024**3, 2),
        "free_gb": round(usage.free / 1024**3, 2),
        "percent": usage.percent,
    }


def system_summary() -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    return {
        "hostname": socket.gethostname(),
        "time": time.strftime("%Y-%m-%d %H:%M:%S"),
        "platform": platform.platform(),
        "python": platform.python_version(),
        "executable": sys.executable,
        "frozen": bool(getattr(sys, "frozen", False)),
        "cpu_count": psutil.cpu_count(logical=True),
        "memory_total_gb": round(memory.total / 1024**3, 2),
        "memory_percent": memory.percent,
    }


def collect_diagnostics(
    ctx: "ShellContext", *, server_url: Optional[str] = None, tail: int = 50
) -> Dict[str, Any]:
    """Gather a support bundle: host facts, config, install state and server status."""
    config = ctx.config
    status = ctx.supervisor.status()
    handle = ctx.supervisor.current
    report = {
        "version": __version__,
        "event_schema": EVENT_SCHEMA_VERSION,
        "system": system_summary(),
        "disk": _disk(config.base_path),
        "config": config.to_dict(),
        "install": ctx.machine.snapshot(),
        "progress": ctx.progress.snapshot(),
        "server": {
            "url": server_url,
            "external": config.uses_external_server,
            "status": status,
            "stdout_tail": handle.stdout_tail.lines(tail) if handle else [],
            "stderr_tail": handle.stderr_tail.lines(tail) if handle else [],
        },
        "capabilities": ctx.registry.names(),
        "logs": log_paths(),
    }
    logger.debug("Collected diagnostics report")
    return report
