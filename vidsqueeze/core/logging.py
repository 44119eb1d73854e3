"""Structured logging with correlation IDs.

HTTP requests get a correlation ID from middleware; background transcode
tasks use their job id, so every line a job emits can be grepped by it.
ffmpeg diagnostics can be long, so string fields are capped in JSON output.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from vidsqueeze.core.tracing import current_ids

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

NO_CORRELATION_ID = "-"
MAX_FIELD_CHARS = 2000

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "correlation_id"}

_NOISY_LOGGERS = ("uvicorn.access", "multipart", "python_multipart")


def get_correlation_id() -> str:
    """Correlation ID of the current request or job.

    Falls back to the active trace id, then to ``-`` outside any context.
    """
    cid = correlation_id_var.get()
    if cid:
        return cid
    trace_id, _ = current_ids()
    return trace_id or NO_CORRELATION_ID


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    correlation_id_var.set(None)


def _jsonable(value: Any) -> Any:
    if isinstance(value, str):
        if len(value) > MAX_FIELD_CHARS:
            return value[:MAX_FIELD_CHARS] + f"... [{len(value) - MAX_FIELD_CHARS} more chars]"
        return value
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """One JSON object per line.

    ``job_id`` is lifted to the top level when present so job logs can be
    filtered without digging into ``extra``.
    """

    def __init__(self, include_stack_trace: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "source": f"{record.module}:{record.lineno}",
        }

        trace_id, span_id = current_ids()
        if trace_id:
            entry["trace_id"] = trace_id
            entry["span_id"] = span_id

        extra = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_FIELDS
        }
        if "job_id" in extra:
            entry["job_id"] = extra.pop("job_id")
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            entry["exception"] = {"type": exc_type.__name__, "message": str(exc)}
            if self.include_stack_trace and tb is not None:
                entry["exception"]["stack_trace"] = traceback.format_exception(exc_type, exc, tb)

        return json.dumps(entry, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamps each record with the current correlation ID."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Route all logging to stdout.

    Args:
        level: Root log level name
        json_format: JSON lines instead of plain text
        include_stack_trace: Include tracebacks in JSON output
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(message)s"
        ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _emit(
    logger: logging.Logger,
    level: int,
    message: str,
    extra: dict[str, Any],
    exception: Optional[BaseException] = None,
) -> None:
    # Keys that clash with LogRecord attributes would make logging raise
    safe = {
        (f"ctx_{key}" if key in _RECORD_FIELDS else key): value
        for key, value in extra.items()
    }
    logger.log(level, message, exc_info=exception, extra=safe)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log an error, with the traceback of ``exception`` when given.

    Args:
        logger: Logger instance
        message: Error message
        exception: Exception to attach
        **extra: Context fields such as ``job_id``
    """
    _emit(logger, logging.ERROR, message, extra, exception)


def log_warning(logger: logging.Logger, message: str, **extra: Any) -> None:
    _emit(logger, logging.WARNING, message, extra)


def log_info(logger: logging.Logger, message: str, **extra: Any) -> None:
    _emit(logger, logging.INFO, message, extra)
