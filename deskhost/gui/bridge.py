from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from PySide6.QtCore import QObject, Signal

from deskhost.core.events import LifecycleEvent
from deskhost.core.progress import ProgressReport
from deskhost.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class ShellBridge(QObject):
    """Run the orchestrator on a worker loop and re-emit its output as Qt signals.

    Signals are emitted from the worker thread; Qt queues them onto the
    receiving widget's thread.
    """

    event_received = Signal(dict)
    progress_updated = Signal(dict)
    startup_finished = Signal(dict)
    capability_result = Signal(str, dict)

    def __init__(self, orchestrator: Orchestrator, *, shutdown_timeout: float = 30.0):
        super().__init__()
        self.orchestrator = orchestrator
        self.shutdown_timeout = shutdown_timeout
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._loop_ready = threading.Event()
        self._detach: List[Callable[[], None]] = []
        self.startup_future: concurrent.futures.Future = concurrent.futures.Future()

    # ─────────────────────────────
    # Forwarding
    # ─────────────────────────────
    def _forward_event(self, event: LifecycleEvent) -> None:
        self.event_received.emit(event.as_dict())

    def _forward_progress(self, report: ProgressReport) -> None:
        self.progress_updated.emit(report.model_dump())

    # ─────────────────────────────
    # Worker loop
    # ─────────────────────────────
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._detach.append(self.orchestrator.attach_window(self._forward_event))
        self._detach.append(
            self.orchestrator.ctx.progress.add_listener(self._forward_progress)
        )

        def _worker() -> None:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            self._loop = loop
            self._loop_ready.set()
            task = loop.create_task(self.orchestrator.run())
            task.add_done_callback(self._on_startup_done)
            try:
                loop.run_forever()
            finally:
                pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
                for item in pending:
                    item.cancel()
                if pending:
                    loop.run_until_complete(
                        asyncio.gather(*pending, return_exceptions=True)
                    )
                loop.close()
                self._loop = None

        self._thread = threading.Thread(target=_worker, daemon=True, name="ShellOrchestrator")
        self._thread.start()
        self._loop_ready.wait(timeout=5.0)
        logger.info("Shell orchestrator thread started")

    def _on_startup_done(self, task: "asyncio.Task") -> None:
        if task.cancelled():
            payload: Dict[str, Any] = {"ok": False, "stage": "cancelled"}
        elif task.exception() is not None:
            exc = task.exception()
            logger.error("Startup sequence raised", exc_info=exc)
            payload = {
                "ok": False,
                "stage": "server_failed",
                "error": {"kind": type(exc).__name__, "message": str(exc)},
            }
        else:
            payload = task.result().as_dict()
        if not self.startup_future.done():
            self.startup_future.set_result(payload)
        self.startup_finished.emit(payload)

    def invoke(self, name: str, payload: Optional[Dict[str, Any]] = None) -> concurrent.futures.Future:
        """Dispatch a capability on the worker loop; the envelope is also emitted."""
        if self._loop is None:
            raise RuntimeError("Shell bridge is not running")
        future = asyncio.run_coroutine_threadsafe(
            self.orchestrator.ctx.registry.dispatch(name, payload), self._loop
        )

        def _emit(done: concurrent.futures.Future) -> None:
            if not done.cancelled() and done.exception() is None:
                self.capability_result.emit(name, done.result())

        future.add_done_callback(_emit)
        return future

    def stop(self) -> None:
        for detach in self._detach:
            detach()
        self._detach.clear()
        loop = self._loop
        thread = self._thread
        if loop is None or thread is None:
            return
        future = asyncio.run_coroutine_threadsafe(self.orchestrator.shutdown(), loop)
        try:
            future.result(timeout=self.shutdown_timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("Orchestrator shutdown exceeded %.0fs", self.shutdown_timeout)
        loop.call_soon_threadsafe(loop.stop)
        if threading.current_thread() is not thread:
            thread.join(timeout=self.shutdown_timeout)
        self._thread = None
        logger.info("Shell orchestrator thread stopped")
