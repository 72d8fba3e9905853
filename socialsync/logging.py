"""Structured logging for the synchronization pipeline, built on Loguru.

Every scheduler job (a refresh scan, one connection's polling run, a
propagation task) runs in its own asyncio task, so the run context kept in
``contextvars`` follows the job through every await. The context is attached
to each record:

- JSON lines (production): as top-level keys next to the message
- human format (development): as a ``key=value`` suffix

Credentials never reach a log record in clear text: token values are held in
``SecretStr`` and only ever logged through :func:`socialsync.utils.redact_token`.

Example:
    >>> from socialsync.logging import logger, set_run_context
    >>> set_run_context(run_id="poll-1", connection_id="c-42", operation="poll")
    >>> logger.info("Polling feed")
"""

import json
import sys
import traceback
from contextvars import ContextVar
from pathlib import Path
from typing import Any

from loguru import logger as loguru_logger

from socialsync.config import settings

# =============================================================================
# Run Context
# =============================================================================

CONTEXT_KEYS = ("run_id", "user_id", "connection_id", "operation")

run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
connection_id_var: ContextVar[str | None] = ContextVar("connection_id", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)

_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    "run_id": run_id_var,
    "user_id": user_id_var,
    "connection_id": connection_id_var,
    "operation": operation_var,
}


def set_run_context(
    run_id: str | None = None,
    user_id: str | None = None,
    connection_id: str | None = None,
    operation: str | None = None,
) -> None:
    """Attach identifiers to every record logged by the current task.

    Arguments left as None keep their current value, so a job can set
    ``run_id`` first and add ``user_id`` once the connection is loaded.
    """
    values = {
        "run_id": run_id,
        "user_id": user_id,
        "connection_id": connection_id,
        "operation": operation,
    }
    for key, value in values.items():
        if value is not None:
            _CONTEXT_VARS[key].set(value)


def clear_run_context() -> None:
    for var in _CONTEXT_VARS.values():
        var.set(None)


def get_run_context() -> dict[str, str | None]:
    """Current run context, one entry per key in CONTEXT_KEYS."""
    return {key: _CONTEXT_VARS[key].get() for key in CONTEXT_KEYS}


# =============================================================================
# Record Rendering
# =============================================================================


def serialize(record: dict[str, Any]) -> str:
    """Render a Loguru record as one JSON line.

    Only the set context keys are emitted; ``extra`` bound on the logger is
    merged in, and exceptions carry their formatted traceback.
    """
    payload: dict[str, Any] = {
        "time": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "module": record["module"],
        "function": record["function"],
        "line": record["line"],
    }
    payload.update({k: v for k, v in get_run_context().items() if v})
    payload.update({k: v for k, v in record["extra"].items() if k != "context"})

    exc = record["exception"]
    if exc:
        payload["exception"] = {
            "type": exc.type.__name__ if exc.type else None,
            "value": str(exc.value),
            "traceback": traceback.format_exception(exc.type, exc.value, exc.traceback),
        }

    return json.dumps(payload, default=str)


def _patch(record: dict[str, Any]) -> None:
    record["serialized"] = serialize(record)
    context = " ".join(f"{k}={v}" for k, v in get_run_context().items() if v)
    record["extra"]["context"] = f" [{context}]" if context else ""


def _json_format(record: dict[str, Any]) -> str:
    # callable formats do not get the traceback appended by Loguru
    return "{serialized}\n"


HUMAN_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
    "<dim>{extra[context]}</dim>"
)
FILE_FORMAT = "{time} | {level} | {message}{extra[context]}"


# =============================================================================
# Logger Configuration
# =============================================================================


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Path | None = None,
    colorize: bool = True,
) -> Any:
    """(Re)configure the Loguru sinks.

    Args:
        level: Minimum log level
        json_logs: Emit JSON lines instead of the human format
        log_file: Optional rotating file sink
        colorize: Colour the human format

    Returns:
        The configured logger
    """
    loguru_logger.remove()
    loguru_logger.configure(patcher=_patch)

    loguru_logger.add(
        sys.stdout,
        level=level,
        format=_json_format if json_logs else HUMAN_FORMAT,
        colorize=colorize and not json_logs,
    )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        loguru_logger.add(
            log_file,
            level=level,
            format=_json_format if json_logs else FILE_FORMAT,
            rotation="100 MB",
            retention="30 days",
            compression="zip",
            enqueue=True,
        )

    return loguru_logger


logger = setup_logging(
    level=settings.log_level,
    json_logs=settings.log_json,
    log_file=settings.data_dir / "socialsync.log" if settings.log_to_file else None,
    colorize=not settings.log_json,
)


__all__ = [
    "logger",
    "CONTEXT_KEYS",
    "run_id_var",
    "user_id_var",
    "connection_id_var",
    "operation_var",
    "set_run_context",
    "clear_run_context",
    "get_run_context",
    "serialize",
    "setup_logging",
]
