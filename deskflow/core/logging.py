"""Process logging for DeskFlow: handlers, JSON output and per-thread context."""

import json
import logging
import sys
import threading
import traceback
from contextlib import contextmanager
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] - %(message)s"

# third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "urllib3", "uvicorn.access")


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, merged with any bound context fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        entry.update(getattr(record, "context", {}))
        return json.dumps(entry, default=str)


class LogContextFilter(logging.Filter):
    """Attaches the calling thread's bound fields (execution_id, request path, ...) to records.

    Worker threads each run one execution branch at a time, so context is
    kept per thread rather than per process.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    def current(self) -> Dict[str, Any]:
        if not hasattr(self._local, "fields"):
            self._local.fields = {}
        return self._local.fields

    def filter(self, record: logging.LogRecord) -> bool:
        merged = dict(self.current())
        merged.update(getattr(record, "context", {}))
        record.context = merged
        return True


_context_filter = LogContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the service.

    Args:
        level: Logging level name
        log_file: Optional path of a rotating log file
        log_format: Format string for plain-text output
        structured: Emit JSON lines instead of plain text
        max_size: Bytes before the log file rotates
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # execution entries are the product's audit trail; keep them at INFO even when the root is quieter
    engine_level = logging.DEBUG if level.upper() == "DEBUG" else logging.INFO
    logging.getLogger("deskflow.execution").setLevel(engine_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def bind_log_context(**fields):
    """Attach fields to every record logged from the current thread."""
    _context_filter.current().update(fields)


def clear_log_context():
    _context_filter.current().clear()


@contextmanager
def log_context(**fields):
    """Bind fields for the duration of a block, restoring the previous ones afterwards."""
    current = _context_filter.current()
    previous = dict(current)
    current.update(fields)
    try:
        yield
    finally:
        current.clear()
        current.update(previous)


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log ``message`` with extra structured fields for this record only."""
    logger.log(level, message, extra={"context": context})


class RetryLogger:
    """Reports retry attempts of one component's storage operations."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"deskflow.retry.{component_name}")
        self.component_name = component_name

    def attempt_failed(self, operation: str, error: Exception, attempt: int, max_attempts: int):
        log_with_context(
            self.logger, logging.WARNING,
            f"{operation} failed (attempt {attempt}/{max_attempts}): {error}",
            component=self.component_name,
            operation=operation,
            error_type=type(error).__name__,
            attempt=attempt,
        )

    def gave_up(self, operation: str, error: Exception, attempts_used: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"{operation} failed after {attempts_used} attempts: {error}",
            component=self.component_name,
            operation=operation,
            error_type=type(error).__name__,
            attempts_used=attempts_used,
        )
