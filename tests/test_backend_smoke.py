from __future__ import annotations

import asyncio
import os
import socket
import sys
import threading
import time
from pathlib import Path

import httpx
import pytest
import uvicorn

from deskhost.backend.__main__ import EXIT_PORT_IN_USE, main as backend_main
from deskhost.backend.app import create_app
from deskhost.core.errors import ServerError, ServerErrorKind
from deskhost.core.events import EventBus
from deskhost.server.probe import HttpReadinessProbe
from deskhost.server.supervisor import LaunchSpec, ProcessSupervisor

ROOT = Path(__file__).resolve().parents[1]


def _find_open_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_backend_app_smoke():
    port = _find_open_port()
    config = uvicorn.Config(create_app(), host="127.0.0.1", port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()

    client = httpx.Client(base_url=f"http://127.0.0.1:{port}", timeout=2.0)
    try:
        for _ in range(50):
            try:
                health_resp = client.get("/health")
                if health_resp.status_code == 200:
                    break
            except httpx.HTTPError:
                time.sleep(0.1)
        else:
            pytest.fail("backend did not respond to /health")

        assert health_resp.json() == {"status": "ok"}
        stats_resp = client.get("/system_stats")
        assert stats_resp.status_code == 200
        body = stats_resp.json()
        assert body["ok"] is True
        assert "cpu" in body["system"]
    finally:
        client.close()
        server.should_exit = True
        thread.join(timeout=5)
        assert not thread.is_alive(), "server thread failed to stop"


def test_backend_entrypoint_reports_busy_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen(1)
        port = busy.getsockname()[1]
        assert backend_main(["--host", "127.0.0.1", "--port", str(port)]) == EXIT_PORT_IN_USE


def _backend_spec(port: int) -> LaunchSpec:
    pythonpath = os.pathsep.join(p for p in (str(ROOT), os.environ.get("PYTHONPATH", "")) if p)
    return LaunchSpec(
        executable=sys.executable,
        args=["-m", "deskhost.backend", "--host", "127.0.0.1", "--port", str(port)],
        probe=HttpReadinessProbe(f"http://127.0.0.1:{port}/system_stats"),
        env={"PYTHONPATH": pythonpath, "PYTHONUNBUFFERED": "1"},
        base_url=f"http://127.0.0.1:{port}",
    )


def test_supervised_backend_becomes_ready(shell_config):
    config = shell_config.with_overrides(readiness_timeout=30.0)
    supervisor = ProcessSupervisor(config, EventBus())
    port = _find_open_port()
    spec = _backend_spec(port)

    async def _run():
        handle = await supervisor.start(spec)
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(f"{spec.base_url}/system_stats")
            return handle, response.json()
        finally:
            await supervisor.stop()
            await spec.probe.aclose()

    handle, stats = asyncio.run(_run())
    assert stats["pid"] == handle.pid
    assert handle.phase.value == "Stopped"


def test_supervised_backend_on_busy_port_is_not_restarted(shell_config):
    supervisor = ProcessSupervisor(shell_config.with_overrides(readiness_timeout=30.0), EventBus())
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        port = busy.getsockname()[1]
        spec = _backend_spec(port)
        # Bound but not listening: the readiness probe is refused.

        async def _run():
            try:
                await supervisor.start(spec)
            finally:
                await spec.probe.aclose()

        with pytest.raises(ServerError) as excinfo:
            asyncio.run(_run())
    assert excinfo.value.kind is ServerErrorKind.PORT_IN_USE
    assert supervisor.spawn_count == 1
