"""
Structured logging with request and sync run context.

Production logs are one JSON object per line. Two context variables tag
every record: the request correlation id (set by CorrelationIdMiddleware)
and the sync run id (set around each run with sync_run_context). Work
handed to the store executor carries both, since the caller's context is
copied into the worker.
"""
import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime
from typing import Any, Dict, Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
sync_run_id_var: ContextVar[str] = ContextVar("sync_run_id", default="")

# LogRecord attributes that are not caller-supplied `extra` fields
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "apscheduler")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Keys: timestamp, level, logger, message, correlation_id, plus
    sync_run_id inside a run, exception when one is attached, and extra
    for any fields passed through `extra=`.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": correlation_id_var.get(),
        }

        sync_run_id = sync_run_id_var.get()
        if sync_run_id:
            log_data["sync_run_id"] = sync_run_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Readable console lines for development, with the same context ids."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        line = f"{color}[{record.levelname}]{self.RESET} {record.name}: {record.getMessage()}"

        correlation_id = correlation_id_var.get()
        if correlation_id:
            line += f" | correlation_id={correlation_id}"
        sync_run_id = sync_run_id_var.get()
        if sync_run_id:
            line += f" | sync_run_id={sync_run_id}"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Logging level name
        json_output: JSON lines if True, colored console lines otherwise
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JSONFormatter() if json_output else ColoredFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def set_correlation_id(correlation_id: str) -> Token:
    """Set the request correlation id; returns the token for clear_correlation_id()."""
    return correlation_id_var.set(correlation_id)


def clear_correlation_id(token: Token) -> None:
    correlation_id_var.reset(token)


@contextmanager
def sync_run_context(run_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with the given sync run id."""
    token = sync_run_id_var.set(run_id)
    try:
        yield
    finally:
        sync_run_id_var.reset(token)
