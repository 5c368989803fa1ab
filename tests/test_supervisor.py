from __future__ import annotations

import asyncio
import os
import sys

import httpx
import pytest

from deskhost.core.errors import ServerError, ServerErrorKind
from deskhost.core.events import EventName
from deskhost.server.probe import HttpReadinessProbe
from deskhost.server.supervisor import (
    LaunchSpec,
    ProcessSupervisor,
    RestartPolicy,
    ServerPhase,
)

SLEEPER = "import time; print('backend up', flush=True); time.sleep(30)"


class RecordingSink:
    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []

    def write(self, stream: str, line: str) -> None:
        self.lines.append((stream, line))


def _transport(failures: int = 0) -> httpx.MockTransport:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] <= failures:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"ok": True})

    return httpx.MockTransport(handler)


def _spec(code: str, *, failures: int = 0, always_fail: bool = False) -> LaunchSpec:
    transport = _transport(10_000 if always_fail else failures)
    probe = HttpReadinessProbe("http://unit/system_stats", transport=transport)
    return LaunchSpec(
        executable=sys.executable,
        args=["-c", code],
        probe=probe,
        base_url="http://unit",
    )


def test_ready_after_failed_probes_publishes_ready_probe(shell_config, bus, recorder):
    supervisor = ProcessSupervisor(shell_config, bus, sink=RecordingSink())

    async def _run():
        handle = await supervisor.start(_spec(SLEEPER, failures=4))
        assert handle.phase is ServerPhase.READY
        assert handle.spec.probe.attempts == 5
        second = await supervisor.start(_spec(SLEEPER))
        assert handle.phase is ServerPhase.STOPPED
        assert second.phase is ServerPhase.READY
        await supervisor.stop()
        return handle, second

    first, second = asyncio.run(_run())
    assert second.phase is ServerPhase.STOPPED
    assert second.exit_code is not None
    assert recorder.of("loaded") == []
    assert len(recorder.of("readyProbe")) == 2
    assert recorder.of("serverCrashed") == []


def test_crash_loop_stops_after_max_crashes(shell_config, bus, recorder):
    sink = RecordingSink()
    supervisor = ProcessSupervisor(shell_config, bus, sink=sink)
    code = "import sys; print('starting', flush=True); print('fatal', file=sys.stderr, flush=True); sys.exit(1)"

    async def _run():
        with pytest.raises(ServerError) as excinfo:
            await supervisor.start(_spec(code, always_fail=True))
        return excinfo.value

    error = asyncio.run(_run())
    assert error.kind is ServerErrorKind.CRASH_LOOP
    assert supervisor.spawn_count == 3
    assert supervisor.failed is error
    crashes = recorder.of("serverCrashed")
    assert len(crashes) == 3
    assert crashes[0].payload["exit_code"] == 1
    assert crashes[0].payload["stderr_tail"] == ["fatal"]
    assert ("stdout", "starting") in sink.lines
    assert recorder.of("shellError")[-1].payload["kind"] == "CrashLoop"
    assert recorder.of("loaded") == []

    # Failed for the session until reset.
    with pytest.raises(ServerError):
        asyncio.run(supervisor.start(_spec(SLEEPER)))
    assert supervisor.spawn_count == 3


def test_deterministic_exit_is_not_restarted(shell_config, bus, recorder):
    supervisor = ProcessSupervisor(shell_config, bus, sink=RecordingSink())

    async def _run():
        with pytest.raises(ServerError) as excinfo:
            await supervisor.start(_spec("import sys; sys.exit(3)", always_fail=True))
        return excinfo.value

    error = asyncio.run(_run())
    assert error.kind is ServerErrorKind.MISSING_DEPENDENCY
    assert supervisor.spawn_count == 1
    assert supervisor.failed is None
    assert recorder.of("serverCrashed")[0].payload["kind"] == "MissingDependency"


def test_readiness_timeout_force_stops_child(shell_config, bus, recorder):
    config = shell_config.with_overrides(readiness_timeout=0.3)
    supervisor = ProcessSupervisor(config, bus, sink=RecordingSink())

    async def _run():
        with pytest.raises(ServerError) as excinfo:
            await supervisor.start(_spec(SLEEPER, always_fail=True))
        return excinfo.value

    error = asyncio.run(_run())
    assert error.kind is ServerErrorKind.READINESS_TIMEOUT
    handle = supervisor.current
    assert handle.phase is ServerPhase.CRASHED
    assert not handle.alive
    assert recorder.of("shellError")[-1].payload["kind"] == "ReadinessTimeout"


def test_spawn_failure(shell_config, bus):
    supervisor = ProcessSupervisor(shell_config, bus, sink=RecordingSink())
    spec = _spec(SLEEPER)
    spec.executable = os.path.join(str(shell_config.base_path), "no-such-python")

    with pytest.raises(ServerError) as excinfo:
        asyncio.run(supervisor.start(spec))
    assert excinfo.value.kind is ServerErrorKind.SPAWN_FAILED


def test_unexpected_exit_after_ready_restarts(shell_config, bus, recorder):
    supervisor = ProcessSupervisor(shell_config, bus, sink=RecordingSink())

    async def _run():
        first = await supervisor.start(_spec(SLEEPER))
        restarted = asyncio.create_task(bus.wait_for(EventName.READY_PROBE, timeout=10))
        await asyncio.sleep(0)
        first._process.kill()
        await restarted
        second = supervisor.current
        await supervisor.stop()
        return first, second

    first, second = asyncio.run(_run())
    assert first.phase is ServerPhase.CRASHED
    assert second is not first
    assert second.restart_count == 1
    assert supervisor.spawn_count == 2
    assert len(recorder.of("serverCrashed")) == 1
    assert len(recorder.of("readyProbe")) == 2


@pytest.mark.skipif(os.name == "nt", reason="SIGTERM cannot be ignored on Windows")
def test_stop_kills_child_that_ignores_terminate(shell_config, bus):
    code = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('armed', flush=True)\n"
        "time.sleep(30)\n"
    )
    supervisor = ProcessSupervisor(shell_config, bus, sink=RecordingSink())

    async def _run():
        handle = await supervisor.start(_spec(code))
        for _ in range(200):
            if "armed" in handle.stdout_tail.lines():
                break
            await asyncio.sleep(0.02)
        await supervisor.stop(timeout=0.3)
        return handle

    handle = asyncio.run(_run())
    assert handle.phase is ServerPhase.STOPPED
    assert handle.exit_code == -9


def test_restart_policy_window_and_backoff():
    now = {"t": 0.0}
    policy = RestartPolicy(
        max_crashes=3, window=60, backoff_initial=1, backoff_max=3, clock=lambda: now["t"]
    )
    assert policy.record_crash() == 1
    assert policy.record_crash() == 2
    now["t"] = 120.0
    # Earlier crashes fell out of the window.
    assert policy.crashes_in_window == 0
    assert policy.record_crash() == 1
    assert policy.record_crash() == 2
    assert policy.record_crash() is None


def test_exit_code_classification(shell_config, bus):
    supervisor = ProcessSupervisor(shell_config, bus)
    assert supervisor.classify_exit(98) is ServerErrorKind.PORT_IN_USE
    assert supervisor.classify_exit(48) is ServerErrorKind.PORT_IN_USE
    assert supervisor.classify_exit(127) is ServerErrorKind.SPAWN_FAILED
    assert supervisor.classify_exit(1) is ServerErrorKind.CRASHED
