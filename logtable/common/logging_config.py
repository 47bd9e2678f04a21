"""
Structured logging for ingestion runs.

Every record carries the run ID of the ingestion that produced it, so the
log of a long-running ingest (which may itself be fed back into logtable)
can be filtered per run. Structured metadata is attached with
``extra={"extra_fields": {...}}`` and merged into the JSON object.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import IO, Any, Dict, Optional

# Run ID of the current ingestion (copied into the reader thread's context)
run_id_ctx: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

PLAIN_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"

# Loggers that are chatty at INFO (Alembic logs every ADD COLUMN)
_QUIET_LOGGERS = ("alembic", "sqlalchemy")


class StructuredFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        run_id = run_id_ctx.get()
        if run_id:
            payload["run_id"] = run_id

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        payload.update(getattr(record, "extra_fields", {}))
        return json.dumps(payload, default=str)


class PerformanceTracker:
    """
    Time a block and log its outcome.

    Completion is logged at `log_level`, or at WARNING when it took longer
    than `slow_seconds`; a failure is logged at WARNING and re-raised.

    Usage:
        with PerformanceTracker("batch_commit", logger, rows=500):
            ...
    """

    def __init__(
        self,
        operation: str,
        logger: logging.Logger,
        log_level: int = logging.DEBUG,
        slow_seconds: Optional[float] = None,
        **extra_fields,
    ):
        self.operation = operation
        self.logger = logger
        self.log_level = log_level
        self.slow_seconds = slow_seconds
        self.extra_fields = extra_fields
        self.duration_seconds: float = 0.0
        self._started: float = 0.0

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_seconds = time.perf_counter() - self._started
        fields = {
            "operation": self.operation,
            "duration_ms": round(self.duration_seconds * 1000, 2),
            **self.extra_fields,
        }

        if exc_type is not None:
            fields["error_type"] = exc_type.__name__
            fields["error"] = str(exc_val)
            self.logger.warning(f"{self.operation} failed", extra={"extra_fields": fields})
            return

        level = self.log_level
        if self.slow_seconds is not None and self.duration_seconds > self.slow_seconds:
            level = logging.WARNING
        self.logger.log(level, f"{self.operation} completed", extra={"extra_fields": fields})


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    stream: Optional[IO[str]] = None,
) -> logging.Handler:
    """
    Configure the root logger.

    Logs go to stderr by default so stdout stays free for command output.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: One JSON object per line if True, plain text if False
        stream: Destination stream (default: sys.stderr)

    Returns:
        The installed handler
    """
    level = logging.getLevelName(log_level.upper())

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return handler


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set the run ID for this context, generating one if not given."""
    run_id = run_id or uuid.uuid4().hex
    run_id_ctx.set(run_id)
    return run_id


def get_run_id() -> Optional[str]:
    return run_id_ctx.get()


def clear_run_id():
    run_id_ctx.set(None)
