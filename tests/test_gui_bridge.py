from __future__ import annotations

import os
import sys

import pytest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
pytest.importorskip("PySide6.QtWidgets")

from PySide6.QtWidgets import QApplication  # noqa: E402

from deskhost.core.errors import InstallationError, InstallErrorKind  # noqa: E402
from deskhost.core.events import EventName  # noqa: E402
from deskhost.gui.bridge import ShellBridge  # noqa: E402
from deskhost.gui.status_window import StatusWindow  # noqa: E402
from deskhost.install.state import Installed  # noqa: E402
from deskhost.install.steps import InstallStep  # noqa: E402
from deskhost.orchestrator import Orchestrator, ShellContext  # noqa: E402


class BrokenStep(InstallStep):
    name = "payload"
    title = "Payload"

    async def run(self, ctx) -> None:
        raise InstallationError(InstallErrorKind.NETWORK_FAILURE, "offline")


@pytest.fixture(scope="module")
def qapp():
    return QApplication.instance() or QApplication(sys.argv)


def _orchestrator(config) -> Orchestrator:
    ctx = ShellContext.create(config, steps=[BrokenStep()])

    def _unused(installed: Installed):
        raise AssertionError("install never completes in these tests")

    return Orchestrator(ctx, launch_builder=_unused)


def test_bridge_replays_state_and_reports_startup(qapp, shell_config):
    orchestrator = _orchestrator(shell_config)
    bridge = ShellBridge(orchestrator, shutdown_timeout=10.0)
    received = []
    bridge.event_received.connect(received.append)

    bridge.start()
    try:
        result = bridge.startup_future.result(timeout=10)
        envelope = bridge.invoke("install.state").result(timeout=5)
    finally:
        bridge.stop()

    # The replay is delivered synchronously on attach.
    assert received[0]["name"] == "installStageChanged"
    assert received[0]["payload"]["state"] == "NotInstalled"
    assert result["stage"] == "install_failed"
    assert result["error"]["kind"] == "NetworkFailure"
    assert envelope["ok"] is True
    assert envelope["data"]["state"]["state"] == "Failed"
    assert not bridge.running


def test_status_window_reflects_events(qapp):
    window = StatusWindow()
    window.on_event(
        {
            "name": EventName.INSTALL_STAGE_CHANGED.value,
            "payload": {"state": "Failed", "reason": "offline", "recoverable": True},
        }
    )
    assert window.status.state == "error"
    assert window.retry_button.isEnabled()

    window.on_progress({"percent": 40, "message": "Downloading dependencies"})
    assert window.progress.value() == 40
    assert window.detail.text() == "Downloading dependencies"

    window.on_event({"name": "loaded", "payload": {"url": "http://127.0.0.1:8188"}})
    assert window.status.state == "success"
    assert window.restart_button.isEnabled()

    window.on_capability_result("install.retry", {"ok": False, "error": {"kind": "HandlerError", "message": "x"}})
    assert "install.retry failed" in window.log_view.toPlainText()
    window.close()
