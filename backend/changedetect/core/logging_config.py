"""
Logging Configuration

JSON lines by default, a readable console format when
OBSERVABILITY_LOG_FORMAT=text. Every record carries the run id (and the
delivery target, inside a scheduler run) bound through LoggingContext.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from changedetect.core.config import settings

RUN_ID_VAR: ContextVar[Optional[str]] = ContextVar('run_id', default=None)
TARGET_VAR: ContextVar[Optional[str]] = ContextVar('delivery_target', default=None)

# LogRecord attributes that never go into the "extra" block
_STANDARD_ATTRS = set(vars(logging.makeLogRecord({}))) | {
    'message', 'run_id', 'delivery_target', 'service',
}

class ContextualFilter(logging.Filter):
    """Stamp run id, delivery target and service identity on each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = RUN_ID_VAR.get()
        record.delivery_target = TARGET_VAR.get()
        record.service = {"name": settings.project_name, "version": settings.version}
        return True

class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for key in ("service", "run_id", "delivery_target"):
            value = getattr(record, key, None)
            if value:
                entry[key] = value

        if record.exc_info:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        extra = {key: value for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS}
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, ensure_ascii=False, default=str)

class ConsoleFormatter(logging.Formatter):
    """Readable single-line output, prefixed with the short run id."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
            datefmt='%H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        target = getattr(record, 'delivery_target', None)
        if target:
            line = f"<{target}> {line}"
        run_id = getattr(record, 'run_id', None)
        if run_id:
            line = f"[{run_id[:8]}] {line}"
        return line

def setup_logging() -> None:
    """Install the stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.observability.log_format == "text":
        handler.setFormatter(ConsoleFormatter())
    else:
        handler.setFormatter(JSONFormatter())
    handler.addFilter(ContextualFilter())
    handler.setLevel(settings.observability.log_level.value)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    # Library chatter
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.debug else logging.WARNING)
    for noisy in ("sqlalchemy.pool", "urllib3", "celery.redirected"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "log_level": settings.observability.log_level.value,
            "log_format": settings.observability.log_format,
        }
    )

def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)

class LoggingContext:
    """Bind a run id (and optionally a delivery target) for the enclosed block."""

    def __init__(self, run_id: Optional[str] = None, target: Optional[str] = None):
        self.run_id = run_id or str(uuid.uuid4())
        self.target = target
        self._tokens = []

    def __enter__(self) -> 'LoggingContext':
        self._tokens.append((RUN_ID_VAR, RUN_ID_VAR.set(self.run_id)))
        if self.target:
            self._tokens.append((TARGET_VAR, TARGET_VAR.set(self.target)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)

def log_exception(logger: logging.Logger, exc: Exception, context: Optional[Dict[str, Any]] = None) -> None:
    """Log ``exc`` at error level with its traceback and any context fields."""
    logger.error(
        f"{type(exc).__name__}: {exc}",
        extra={**(context or {}), "exception_type": type(exc).__name__},
        exc_info=exc,
    )

def log_performance(
    logger: logging.Logger,
    operation: str,
    duration_ms: float,
    success: bool = True,
    **context
) -> None:
    """Log the duration of an operation; failures go out at warning level."""
    logger.log(
        logging.INFO if success else logging.WARNING,
        f"{operation} took {duration_ms:.1f}ms",
        extra={"operation": operation, "duration_ms": round(duration_ms, 3), "success": success, **context},
    )

__all__ = [
    'setup_logging',
    'get_logger',
    'LoggingContext',
    'log_exception',
    'log_performance',
    'RUN_ID_VAR',
    'TARGET_VAR',
]
