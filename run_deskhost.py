#!/usr/bin/env python3

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from deskhost.config.settings import ENV_SERVER_URL, load_config
from deskhost.core.errors import FatalError
from deskhost.logging_config import init_logging
from deskhost.orchestrator import Orchestrator, ShellContext

LOGGER = logging.getLogger("deskhost.launcher")


def log(message: str) -> None:
    LOGGER.info(message)
    print(f"[deskhost] {message}")


def qt_runtime_available() -> tuple[bool, str]:
    try:
        from PySide6.QtWidgets import QApplication  # type: ignore

        _ = QApplication
        return True, ""
    except ImportError as exc:
        return False, str(exc)


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="deskhost shell launcher.")
    parser.add_argument(
        "--headless",
        "--no-gui",
        action="store_true",
        dest="headless",
        help="Run the startup sequence without the Qt window.",
    )
    parser.add_argument(
        "--base-path",
        default=None,
        help="Directory the backend environment is installed into.",
    )
    parser.add_argument(
        "--server-url",
        default=None,
        help=f"Use an externally managed backend (same as {ENV_SERVER_URL}).",
    )
    parser.add_argument(
        "--host",
        dest="host",
        default=None,
        help="Interface the backend binds to (default: 127.0.0.1).",
    )
    parser.add_argument(
        "--port",
        dest="port",
        type=int,
        default=None,
        help="Preferred backend port; the next free candidate is used when busy.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Root log level (default: INFO).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="JSON config file (default: config/deskhost.json or deskhost.json).",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace):
    overrides = {
        "base_path": args.base_path,
        "external_server_url": args.server_url,
        "host": args.host,
        "log_level": args.log_level,
    }
    config = load_config(args.config, **overrides)
    if args.port:
        ports = (args.port,) + tuple(p for p in config.ports if p != args.port)
        config = config.with_overrides(ports=ports)
    return config


async def run_headless(orchestrator: Orchestrator) -> int:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            pass

    def _progress(report) -> None:
        log(f"{report.stage} {report.percent:3d}% {report.message}")

    orchestrator.ctx.progress.add_listener(_progress)
    try:
        result = await orchestrator.run()
        if not result.ok:
            error = result.error or {}
            log(f"Startup ended at {result.stage}: {error.get('message', '')}")
            return 1
        log(f"Backend ready at {result.url}; press Ctrl+C to stop")
        await stop.wait()
        return 0
    finally:
        await orchestrator.shutdown()


def launch_gui(orchestrator: Orchestrator) -> int:
    from PySide6.QtWidgets import QApplication

    from deskhost.gui.bridge import ShellBridge
    from deskhost.gui.status_window import StatusWindow

    app = QApplication.instance() or QApplication(sys.argv)
    bridge = ShellBridge(orchestrator)
    window = StatusWindow(bridge)
    window.resize(640, 420)
    window.show()
    bridge.start()
    try:
        return int(app.exec())
    finally:
        bridge.stop()


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_arguments(argv)
    try:
        config = build_config(args)
    except FatalError as exc:
        log(f"Invalid configuration: {exc.message}")
        return 2
    init_logging(config.log_dir, level=config.log_level)
    log(f"Logs: {Path(config.log_dir)}")

    try:
        ctx = ShellContext.create(config)
    except FatalError as exc:
        LOGGER.error("Cannot start: %s", exc.message)
        return 2
    orchestrator = Orchestrator(ctx)

    headless = args.headless or os.environ.get("DESKHOST_HEADLESS", "").strip().lower() in {
        "1",
        "true",
        "yes",
    }
    if not headless:
        qt_available, qt_reason = qt_runtime_available()
        if not qt_available:
            log(f"Qt runtime unavailable ({qt_reason}); running headless.")
            headless = True

    if headless:
        return asyncio.run(run_headless(orchestrator))
    return launch_gui(orchestrator)


if __name__ == "__main__":
    sys.exit(main())
