"""
``python -m deskhost.backend --host HOST --port PORT``

Exit codes are part of the contract with the supervisor:

* 98 - the port is already bound (EADDRINUSE)
* 3  - a runtime dependency is missing
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
from typing import Optional

EXIT_PORT_IN_USE = 98
EXIT_MISSING_DEPENDENCY = 3

LOGGER = logging.getLogger("deskhost.backend")


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="deskhost reference backend.")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind.")
    parser.add_argument("--port", type=int, default=8188, help="TCP port to bind.")
    parser.add_argument("--log-level", default="info", help="uvicorn log level.")
    return parser.parse_args(argv)


def port_available(host: str, port: int) -> bool:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_arguments(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        import uvicorn

        from deskhost.backend.app import create_app
    except ImportError as exc:
        LOGGER.error("Backend dependency missing: %s", exc)
        return EXIT_MISSING_DEPENDENCY

    if not port_available(args.host, args.port):
        LOGGER.error("Port %s on %s is already in use", args.port, args.host)
        return EXIT_PORT_IN_USE

    LOGGER.info("Starting backend at http://%s:%s", args.host, args.port)
    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    sys.exit(main())
