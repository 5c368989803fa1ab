from __future__ import annotations

import asyncio

import pytest

from deskhost.core.errors import IpcError, IpcErrorKind, ServerError, ServerErrorKind
from deskhost.core.events import EventName
from deskhost.ipc.registry import PHASE_1, PHASE_2, CapabilityRegistry


def test_duplicate_registration_is_rejected(bus, recorder):
    registry = CapabilityRegistry(bus)
    registry.register_phase1("diagnostics.report", lambda payload: {})
    with pytest.raises(IpcError) as excinfo:
        registry.register_phase1("diagnostics.report", lambda payload: {})
    assert excinfo.value.kind is IpcErrorKind.DUPLICATE_REGISTRATION
    assert recorder.of("shellError")[0].payload["kind"] == "DuplicateRegistration"
    assert registry.names() == ["diagnostics.report"]


def test_phase1_closed_after_seal(bus):
    registry = CapabilityRegistry(bus)
    registry.seal_phase1()
    with pytest.raises(IpcError) as excinfo:
        registry.register_phase1("late", lambda payload: None)
    assert excinfo.value.kind is IpcErrorKind.PHASE_VIOLATION


def test_phase2_requires_ready_signal(bus):
    registry = CapabilityRegistry(bus)
    with pytest.raises(IpcError) as excinfo:
        registry.register_phase2("server.url", lambda payload: None)
    assert excinfo.value.kind is IpcErrorKind.PHASE_VIOLATION

    bus.publish(EventName.READY_PROBE, {"url": "http://unit"})
    registry.register_phase2("server.url", lambda payload: "http://unit")
    assert registry.names(PHASE_2) == ["server.url"]
    assert registry.names(PHASE_1) == []
    # Same name cannot come back in the other phase either.
    with pytest.raises(IpcError):
        registry.register_phase1("server.url", lambda payload: None)


def test_registry_created_after_loaded_is_open(bus):
    bus.publish(EventName.LOADED)
    registry = CapabilityRegistry(bus)
    assert registry.ready_seen
    registry.register_phase2("server.status", lambda payload: {})


def test_dispatch_envelopes(bus, recorder):
    registry = CapabilityRegistry(bus)

    async def echo(payload):
        return {"echo": payload["value"]}

    def broken(payload):
        raise ValueError("bad input")

    def server_down(payload):
        raise ServerError(ServerErrorKind.CRASH_LOOP, "gave up")

    registry.register_phase1("echo", echo)
    registry.register_phase1("broken", broken)
    registry.register_phase1("server_down", server_down)

    async def _run():
        return (
            await registry.dispatch("echo", {"value": 7}),
            await registry.dispatch("broken"),
            await registry.dispatch("server_down"),
            await registry.dispatch("missing"),
        )

    ok, broken_env, server_env, missing = asyncio.run(_run())
    assert ok == {"ok": True, "data": {"echo": 7}}
    assert broken_env["ok"] is False
    assert broken_env["error"]["kind"] == "HandlerError"
    assert broken_env["error"]["message"] == "bad input"
    assert server_env["error"]["kind"] == "CrashLoop"
    assert missing["error"]["kind"] == "HandlerNotFound"
    assert [e.payload["capability"] for e in recorder.of("shellError")] == [
        "broken",
        "server_down",
        "missing",
    ]


def test_invoke_propagates_errors(bus):
    registry = CapabilityRegistry(bus)
    with pytest.raises(IpcError) as excinfo:
        asyncio.run(registry.invoke("nothing"))
    assert excinfo.value.kind is IpcErrorKind.HANDLER_NOT_FOUND
