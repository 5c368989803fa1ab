from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

import psutil
from fastapi import FastAPI

from deskhost import __version__

LOGGER = logging.getLogger(__name__)


def collect_system_stats(root: Path | None = None) -> Dict[str, Any]:
    """Return a lightweight snapshot of CPU, RAM and disk state."""

    cpu_percent = float(psutil.cpu_percent(interval=None))
    mem_info = psutil.virtual_memory()
    disk_info = psutil.disk_usage(str(root or Path.cwd()))
    return {
        "ok": True,
        "system": {
            "cpu": round(cpu_percent, 2),
            "mem": round(float(mem_info.percent), 2),
            "mem_used_mb": int(mem_info.used // (1024 * 1024)),
            "mem_total_mb": int(mem_info.total // (1024 * 1024)),
            "disk": round(float(disk_info.percent), 2),
            "disk_total_gb": round(float(disk_info.total) / (1024**3), 2),
        },
        "pid": os.getpid(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    """Application factory used by ``python -m deskhost.backend`` and tests."""
    app = FastAPI(title="deskhost backend", version=__version__)
    app.state.started_at = time.time()

    @app.get("/health", tags=["System"], summary="Simple health probe")
    async def health():
        return {"status": "ok"}

    @app.get("/system_stats", tags=["System"], summary="System metrics snapshot")
    async def system_stats():
        stats = collect_system_stats()
        stats["version"] = __version__
        stats["uptime"] = round(time.time() - app.state.started_at, 3)
        return stats

    LOGGER.info("Backend application ready", extra={"routes": len(app.routes)})
    return app
