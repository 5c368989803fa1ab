from __future__ import annotations

import socket
from typing import Optional, Sequence

_LOCAL_BIND_HOSTS = {
    "127.0.0.1",
    "localhost",
    "0.0.0.0",
    "0",
    "*",
    "::",
    "[::]",
    "::1",
}


def connect_host(host: str) -> str:
    """Translate a bind address into one a client can connect to."""
    lowered = host.strip().lower()
    if lowered in {"0.0.0.0", "0", "*"}:
        return "127.0.0.1"
    if lowered in {"::", "[::]"}:
        return "localhost"
    return host


def is_local_host(host: str) -> bool:
    return host.strip().lower() in _LOCAL_BIND_HOSTS


def is_port_free(host: str, port: int) -> bool:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.25)
            return sock.connect_ex((connect_host(host), int(port))) != 0
    except OSError:
        return False


def find_open_port(host: str) -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((connect_host(host), 0))
        return int(sock.getsockname()[1])


def select_port(
    host: str, candidates: Sequence[int], requested: Optional[int] = None
) -> tuple[int, bool]:
    """Pick the first free port, preferring ``requested``.

    Returns ``(port, rolled)`` where ``rolled`` tells whether the preferred
    port had to be skipped.
    """
    ordered: list[int] = []
    for value in ([requested] if requested else []) + list(candidates):
        if value and 0 < int(value) < 65536 and int(value) not in ordered:
            ordered.append(int(value))
    if not ordered:
        return find_open_port(host), True
    preferred = ordered[0]
    if not is_local_host(host):
        return preferred, False
    for port in ordered:
        if is_port_free(host, port):
            return port, port != preferred
    return find_open_port(host), True


def base_url(host: str, port: int) -> str:
    return f"http://{connect_host(host)}:{port}"
