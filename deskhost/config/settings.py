"""
Shell configuration.

Values are resolved from three layers: built-in defaults, an optional JSON
config file (``config/deskhost.json`` or ``deskhost.json``; the ``"shell"``
section is used when present) and ``DESKHOST_*`` environment overrides.

A packaged (frozen) build ignores environment overrides unless
``DESKHOST_DEV_MODE`` is set, so that a stray developer environment cannot
redirect an end-user install.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from platformdirs import PlatformDirs

from deskhost.core.errors import FatalError

logger = logging.getLogger(__name__)

APP_NAME = "deskhost"
APP_AUTHOR = "deskhost"

CONFIG_CANDIDATES: tuple[Path, ...] = (Path("config/deskhost.json"), Path("deskhost.json"))

ENV_PREFIX = "DESKHOST_"
ENV_DEV_MODE = "DESKHOST_DEV_MODE"
ENV_SERVER_URL = "DESKHOST_SERVER_URL"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORTS: tuple[int, ...] = (8000, 8188, 8189)

# Backend exit-code contract.
DEFAULT_EXIT_CODES: Dict[int, str] = {
    98: "PortInUse",  # EADDRINUSE (linux)
    48: "PortInUse",  # EADDRINUSE (darwin)
    3: "MissingDependency",
    127: "SpawnFailed",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _default_base_path() -> Path:
    dirs = PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=False)
    return Path(dirs.user_data_path) / "backend"


def _default_log_dir() -> Path:
    dirs = PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=False)
    return Path(dirs.user_log_path)


@dataclass(frozen=True)
class ShellConfig:
    base_path: Path = field(default_factory=_default_base_path)
    log_dir: Path = field(default_factory=_default_log_dir)
    log_level: str = "INFO"

    # Backend endpoint
    host: str = DEFAULT_HOST
    ports: Tuple[int, ...] = DEFAULT_PORTS
    readiness_path: str = "/system_stats"
    backend_module: str = "deskhost.backend"
    backend_args: Tuple[str, ...] = ()
    backend_env: Dict[str, str] = field(default_factory=dict)
    requirements: Tuple[str, ...] = ("fastapi", "uvicorn", "psutil")
    external_server_url: Optional[str] = None

    # Installation
    min_free_bytes: int = 2 * 1024**3
    lock_wait: float = 0.0
    pip_timeout: float = 900.0

    # Readiness probing
    readiness_timeout: float = 120.0
    probe_initial_interval: float = 0.25
    probe_backoff: float = 2.0
    probe_max_interval: float = 2.0
    probe_request_timeout: float = 2.0

    # Restart policy
    max_crashes: int = 3
    crash_window: float = 300.0
    restart_backoff_initial: float = 1.0
    restart_backoff_max: float = 30.0

    # Shutdown / startup
    grace_period: float = 10.0
    startup_timeout: float = 600.0

    output_tail_lines: int = 500
    exit_codes: Dict[int, str] = field(default_factory=lambda: dict(DEFAULT_EXIT_CODES))

    dev_mode: bool = False

    def with_overrides(self, **changes: Any) -> "ShellConfig":
        return replace(self, **changes)

    @property
    def uses_external_server(self) -> bool:
        return bool(self.external_server_url)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, Path):
                value = str(value)
            elif isinstance(value, tuple):
                value = list(value)
            elif isinstance(value, dict):
                value = {str(k): v for k, v in value.items()}
            payload[item.name] = value
        return payload


def is_packaged() -> bool:
    return bool(getattr(sys, "frozen", False))


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _normalise_ports(values: Any) -> Tuple[int, ...]:
    if isinstance(values, (str, int)):
        values = str(values).replace(";", ",").split(",")
    result: list[int] = []
    for value in values or ():
        try:
            port = int(str(value).strip())
        except (TypeError, ValueError):
            continue
        if 0 < port < 65536 and port not in result:
            result.append(port)
    return tuple(result) or DEFAULT_PORTS


def _load_raw_config(path: Optional[Path]) -> Dict[str, Any]:
    candidates = (path,) if path is not None else CONFIG_CANDIDATES
    for candidate in candidates:
        try:
            payload = json.loads(Path(candidate).read_text(encoding="utf-8"))
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring malformed config %s: %s", candidate, exc)
            continue
        if not isinstance(payload, dict):
            continue
        section = payload.get("shell")
        return dict(section) if isinstance(section, Mapping) else payload
    return {}


_FIELD_NAMES = {item.name for item in fields(ShellConfig)}


def _coerce(name: str, value: Any, current: Any) -> Any:
    if name == "ports":
        return _normalise_ports(value)
    if name == "exit_codes":
        return {int(k): str(v) for k, v in dict(value).items()}
    if isinstance(current, Path):
        return Path(str(value)).expanduser()
    if isinstance(current, bool):
        return _as_bool(value)
    if isinstance(current, int) and not isinstance(current, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, tuple):
        if isinstance(value, str):
            return tuple(value.split())
        return tuple(str(item) for item in value)
    if isinstance(current, dict):
        return dict(value)
    return value if value is None else str(value)


def _apply(
    config: ShellConfig, values: Mapping[str, Any], *, source: str = "config"
) -> ShellConfig:
    changes: Dict[str, Any] = {}
    for key, value in values.items():
        if key not in _FIELD_NAMES:
            logger.debug("Unknown config key %r ignored", key)
            continue
        try:
            changes[key] = _coerce(key, value, getattr(config, key))
        except (TypeError, ValueError) as exc:
            raise FatalError(
                f"Invalid {source} value {value!r} for {key}: {exc}",
                details={"key": key, "value": str(value), "source": source},
            ) from exc
    return replace(config, **changes) if changes else config


_ENV_FIELDS: Dict[str, str] = {
    "DESKHOST_BASE_PATH": "base_path",
    "DESKHOST_LOG_DIR": "log_dir",
    "DESKHOST_LOG_LEVEL": "log_level",
    "DESKHOST_HOST": "host",
    "DESKHOST_PORT": "ports",
    "DESKHOST_PORTS": "ports",
    "DESKHOST_READINESS_TIMEOUT": "readiness_timeout",
    "DESKHOST_STARTUP_TIMEOUT": "startup_timeout",
    "DESKHOST_MAX_CRASHES": "max_crashes",
    "DESKHOST_GRACE_PERIOD": "grace_period",
    ENV_SERVER_URL: "external_server_url",
}


def env_overrides_enabled(env: Mapping[str, str]) -> bool:
    if not is_packaged():
        return True
    return _as_bool(env.get(ENV_DEV_MODE, ""))


def load_config(
    path: str | os.PathLike[str] | None = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> ShellConfig:
    """Build the shell configuration from defaults, file, environment and kwargs.

    Raises :class:`FatalError` when a value cannot be converted to its field type.
    """
    environ = os.environ if env is None else env
    config = ShellConfig()
    config = _apply(
        config, _load_raw_config(Path(path) if path else None), source="config file"
    )

    dev_mode = _as_bool(environ.get(ENV_DEV_MODE, ""))
    if env_overrides_enabled(environ):
        values = {
            field_name: environ[env_name]
            for env_name, field_name in _ENV_FIELDS.items()
            if environ.get(env_name)
        }
        config = _apply(config, values, source="environment")
    elif any(name.startswith(ENV_PREFIX) for name in environ):
        logger.info(
            "Packaged build: ignoring DESKHOST_* overrides (set %s=1 to honour them)",
            ENV_DEV_MODE,
        )

    config = replace(config, dev_mode=dev_mode)
    if overrides:
        config = _apply(
            config, {k: v for k, v in overrides.items() if v is not None}, source="override"
        )
    if config.external_server_url:
        config = replace(config, external_server_url=config.external_server_url.rstrip("/"))
    return config
