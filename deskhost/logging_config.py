from __future__ import annotations

import json
import logging
import os
import uuid
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

DEFAULT_LOG_FILE = "shell.log"
SERVER_LOG_FILE = "server.log"
SERVER_OUTPUT_LOGGER = "deskhost.server.output"
_RUN_ID_VAR: ContextVar[str | None] = ContextVar("deskhost_run_id", default=None)
_CONTEXT_FILTER: logging.Filter | None = None
_LOG_PATHS: Dict[str, str] = {}

_RESERVED_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "run_id",
        "taskName",
    }
)


class StructuredJsonFormatter(logging.Formatter):
    """Render log records as structured JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        run_id = getattr(record, "run_id", None)
        if run_id:
            payload["run_id"] = run_id

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = record.stack_info

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extras:
            payload["extra"] = _serialise_extra(extras)

        return json.dumps(payload, ensure_ascii=True)


class RunContextFilter(logging.Filter):
    """Inject the current startup run id into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        rid = get_run_id()
        if rid:
            record.run_id = rid
        elif not hasattr(record, "run_id"):
            record.run_id = None
        return True


def _serialise_extra(data: Dict[str, Any]) -> Dict[str, Any]:
    serialised: Dict[str, Any] = {}
    for key, value in data.items():
        try:
            json.dumps(value)
            serialised[key] = value
        except (TypeError, ValueError):
            serialised[key] = repr(value)
    return serialised


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def set_run_id(value: str | None) -> Token:
    """Set the run id attached to log records of the current context."""
    return _RUN_ID_VAR.set(value)


def get_run_id() -> str | None:
    return _RUN_ID_VAR.get()


def reset_run_id(token: Token) -> None:
    try:
        _RUN_ID_VAR.reset(token)
    except (RuntimeError, ValueError):
        pass


def log_paths() -> Dict[str, str]:
    """Files written by the most recent :func:`init_logging` call."""
    return dict(_LOG_PATHS)


def _coerce_level(level: str) -> int:
    value = getattr(logging, str(level).upper(), None)
    return value if isinstance(value, int) else logging.INFO


def default_log_dir() -> Path:
    for env_name in ("DESKHOST_LOG_DIR", "LOG_DIR"):
        override = os.getenv(env_name)
        if override:
            return Path(override).expanduser().resolve()
    return (Path.cwd() / "logs").resolve()


def _apply_context_filter(logger: logging.Logger) -> None:
    global _CONTEXT_FILTER
    if _CONTEXT_FILTER is None:
        _CONTEXT_FILTER = RunContextFilter()
    if _CONTEXT_FILTER not in logger.filters:
        logger.addFilter(_CONTEXT_FILTER)


def init_logging(
    log_dir: str | os.PathLike[str] | None = None,
    *,
    level: str = "INFO",
    filename: str = DEFAULT_LOG_FILE,
) -> Path:
    """Initialise root logging with structured JSON output.

    Backend stdout/stderr lines are routed to their own rotating
    ``server.log`` and do not propagate to the root handlers.
    """

    base = Path(log_dir).expanduser().resolve() if log_dir else default_log_dir()
    base.mkdir(parents=True, exist_ok=True)
    log_path = base / filename

    root_logger = logging.getLogger()
    root_logger.setLevel(_coerce_level(level))
    _apply_context_filter(root_logger)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = StructuredJsonFormatter()
    file_handler = RotatingFileHandler(
        str(log_path),
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(RunContextFilter())
    root_logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(RunContextFilter())
    root_logger.addHandler(stream_handler)

    output_logger = logging.getLogger(SERVER_OUTPUT_LOGGER)
    output_logger.setLevel(logging.INFO)
    output_logger.propagate = False
    _apply_context_filter(output_logger)
    server_path = base / SERVER_LOG_FILE
    for handler in list(output_logger.handlers):
        if getattr(handler, "_deskhost_server", False):
            output_logger.removeHandler(handler)
            handler.close()
    server_handler = RotatingFileHandler(
        str(server_path),
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    server_handler.setFormatter(formatter)
    server_handler.addFilter(RunContextFilter())
    server_handler._deskhost_server = True  # type: ignore[attr-defined]
    output_logger.addHandler(server_handler)

    _LOG_PATHS.update(shell=str(log_path), server=str(server_path))
    return log_path
