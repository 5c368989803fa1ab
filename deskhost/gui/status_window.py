# Minimal shell window: install stage, progress, server state and troubleshooting actions.

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from PySide6.QtGui import QColor, QPalette
from PySide6.QtWidgets import (
    QHBoxLayout,
    QLabel,
    QPlainTextEdit,
    QProgressBar,
    QPushButton,
    QVBoxLayout,
    QWidget,
)

from deskhost.gui.bridge import ShellBridge

logger = logging.getLogger(__name__)

_COLORS = {
    "success": QColor(46, 204, 113),
    "warning": QColor(241, 196, 15),
    "error": QColor(231, 76, 60),
    "idle": QColor(149, 165, 166),
}


class StatusLabel(QLabel):
    """Color-coded status indicator."""

    def __init__(self, default_text: str = "Starting"):
        super().__init__(default_text)
        self.setAutoFillBackground(True)
        self.state = "idle"
        self.set_status("idle", default_text)

    def set_status(self, state: str, message: str) -> None:
        self.state = state if state in _COLORS else "idle"
        palette = self.palette()
        palette.setColor(QPalette.Window, _COLORS[self.state])
        self.setPalette(palette)
        self.setText(f" {message}")


class StatusWindow(QWidget):
    def __init__(self, bridge: Optional[ShellBridge] = None, parent: Optional[QWidget] = None):
        super().__init__(parent)
        self.setWindowTitle("deskhost")
        self.bridge = bridge

        self.status = StatusLabel("Starting")
        self.progress = QProgressBar()
        self.progress.setRange(0, 100)
        self.detail = QLabel("")
        self.log_view = QPlainTextEdit()
        self.log_view.setReadOnly(True)
        self.log_view.setMaximumBlockCount(500)

        self.retry_button = QPushButton("Retry install")
        self.retry_button.setEnabled(False)
        self.restart_button = QPushButton("Restart server")
        self.restart_button.setEnabled(False)

        buttons = QHBoxLayout()
        buttons.addWidget(self.retry_button)
        buttons.addWidget(self.restart_button)
        buttons.addStretch(1)

        layout = QVBoxLayout(self)
        layout.addWidget(self.status)
        layout.addWidget(self.progress)
        layout.addWidget(self.detail)
        layout.addLayout(buttons)
        layout.addWidget(self.log_view)

        if bridge is not None:
            bridge.event_received.connect(self.on_event)
            bridge.progress_updated.connect(self.on_progress)
            bridge.startup_finished.connect(self.on_startup_finished)
            bridge.capability_result.connect(self.on_capability_result)
            self.retry_button.clicked.connect(lambda: bridge.invoke("install.retry"))
            self.restart_button.clicked.connect(
                lambda: bridge.invoke("troubleshoot.restart_server")
            )

    # ─────────────────────────────
    # Slots
    # ─────────────────────────────
    def _append(self, line: str) -> None:
        self.log_view.appendPlainText(line)

    def on_event(self, event: Dict[str, Any]) -> None:
        name = event.get("name")
        payload = event.get("payload") or {}
        self._append(f"{name}: {payload}")
        if name == "installStageChanged":
            self._apply_install_state(payload)
        elif name == "loaded":
            self.status.set_status("success", f"Server ready at {payload.get('url') or payload.get('base_url')}")
            self.restart_button.setEnabled(True)
        elif name == "serverCrashed":
            self.status.set_status(
                "warning", f"Server exited with code {payload.get('exit_code')} ({payload.get('kind')})"
            )
        elif name == "shellError":
            self.status.set_status("error", str(payload.get("message", "error")))
            if payload.get("kind") == "CrashLoop":
                self.restart_button.setEnabled(True)

    def _apply_install_state(self, payload: Dict[str, Any]) -> None:
        state = payload.get("state")
        if state == "Installing":
            self.status.set_status(
                "idle", f"Installing ({payload.get('index')}/{payload.get('total')}): {payload.get('step')}"
            )
        elif state == "Installed":
            self.status.set_status("idle", "Installed; starting server")
            self.progress.setValue(100)
        elif state == "Failed":
            self.status.set_status("error", f"Install failed: {payload.get('reason')}")
            self.retry_button.setEnabled(bool(payload.get("recoverable")))
        else:
            self.status.set_status("idle", str(state))
        if state != "Failed":
            self.retry_button.setEnabled(False)

    def on_progress(self, report: Dict[str, Any]) -> None:
        self.progress.setValue(int(report.get("percent") or 0))
        self.detail.setText(str(report.get("message") or ""))

    def on_startup_finished(self, result: Dict[str, Any]) -> None:
        self._append(f"startup: {result.get('stage')}")
        if not result.get("ok") and result.get("stage") != "install_failed":
            error = result.get("error") or {}
            self.status.set_status("error", str(error.get("message") or result.get("stage")))

    def on_capability_result(self, name: str, envelope: Dict[str, Any]) -> None:
        if not envelope.get("ok"):
            error = envelope.get("error") or {}
            self._append(f"{name} failed: {error.get('kind')}: {error.get('message')}")
            logger.warning("Capability %s failed: %s", name, error)
        else:
            data = envelope.get("data")
            if isinstance(data, dict) and data.get("ok") is False:
                # install.retry / troubleshoot.restart_server report a startup result.
                self._append(f"{name}: {data.get('stage')}")
            else:
                self._append(f"{name}: ok")
