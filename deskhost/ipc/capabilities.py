"""Concrete capability handlers exposed to the UI process."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List

import httpx

from deskhost.core.errors import ServerError, ServerErrorKind
from deskhost.diagnostics import collect_diagnostics

if TYPE_CHECKING:
    from deskhost.orchestrator import Orchestrator


PHASE1_CAPABILITIES = (
    "install.state",
    "install.retry",
    "install.reset",
    "diagnostics.report",
    "diagnostics.server_output",
    "troubleshoot.restart_server",
)

STATS_PATH = "/system_stats"

PHASE2_CAPABILITIES = (
    "server.url",
    "server.status",
    "server.stats",
)


def register_phase1_capabilities(orchestrator: "Orchestrator") -> List[str]:
    ctx = orchestrator.ctx

    def install_state(payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"state": ctx.machine.snapshot(), "progress": ctx.progress.snapshot()}

    async def install_retry(payload: Dict[str, Any]) -> Dict[str, Any]:
        result = await orchestrator.retry()
        return result.as_dict()

    def install_reset(payload: Dict[str, Any]) -> Dict[str, Any]:
        ctx.machine.reset()
        return ctx.machine.snapshot()

    def diagnostics_report(payload: Dict[str, Any]) -> Dict[str, Any]:
        return collect_diagnostics(ctx, server_url=orchestrator.server_url)

    def server_output(payload: Dict[str, Any]) -> Dict[str, Any]:
        limit = int(payload.get("limit") or 100)
        handle = ctx.supervisor.current
        if handle is None:
            return {"pid": None, "stdout": [], "stderr": []}
        return {
            "pid": handle.pid,
            "phase": handle.phase.value,
            "stdout": handle.stdout_tail.lines(limit),
            "stderr": handle.stderr_tail.lines(limit),
        }

    async def restart_server(payload: Dict[str, Any]) -> Dict[str, Any]:
        result = await orchestrator.restart_server()
        return {**result.as_dict(), "server": ctx.supervisor.status()}

    handlers = {
        "install.state": install_state,
        "install.retry": install_retry,
        "install.reset": install_reset,
        "diagnostics.report": diagnostics_report,
        "diagnostics.server_output": server_output,
        "troubleshoot.restart_server": restart_server,
    }
    for name in PHASE1_CAPABILITIES:
        ctx.registry.register_phase1(name, handlers[name])
    return list(PHASE1_CAPABILITIES)


def register_phase2_capabilities(orchestrator: "Orchestrator") -> List[str]:
    ctx = orchestrator.ctx

    def server_url(payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"url": orchestrator.server_url}

    def server_status(payload: Dict[str, Any]) -> Dict[str, Any]:
        status = ctx.supervisor.status()
        status["url"] = orchestrator.server_url
        status["external"] = ctx.config.uses_external_server
        return status

    async def server_stats(payload: Dict[str, Any]) -> Any:
        url = f"{orchestrator.server_url}{STATS_PATH}"
        async with ctx.http_client(timeout=ctx.config.probe_request_timeout) as client:
            response = await client.get(url)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ServerError(
                ServerErrorKind.CRASHED,
                f"{url} answered HTTP {response.status_code}",
                details={"url": url, "status": response.status_code},
            ) from exc
        return response.json()

    handlers = {
        "server.url": server_url,
        "server.status": server_status,
        "server.stats": server_stats,
    }
    for name in PHASE2_CAPABILITIES:
        ctx.registry.register_phase2(name, handlers[name])
    return list(PHASE2_CAPABILITIES)
