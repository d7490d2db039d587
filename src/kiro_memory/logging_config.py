"""
Logging setup for kiro-memory.

All loggers live under the ``kiro_memory`` namespace. ``setup_logging`` wires
that namespace from the ``logging`` config section: a stderr handler, an
optional log file, and plain or JSON lines.
"""

import functools
import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from .config import LoggingConfig

NAMESPACE = "kiro_memory"
PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Passed through ``extra=`` by the worker, migrations and maintenance jobs
_EXTRA_FIELDS = ("operation", "duration_ms", "project", "observation_id", "details")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, UTC timestamps, known ``extra`` fields lifted to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _resolve_level(name: Optional[str]) -> int:
    level = logging.getLevelName((name or "INFO").upper())
    # getLevelName returns a string for unknown names
    return level if isinstance(level, int) else logging.INFO


def setup_logging(config: Optional["LoggingConfig"] = None, verbose: bool = False) -> logging.Logger:
    """
    Configure the kiro_memory logger tree from the logging config section.

    Args:
        config: Logging section of AppConfig; defaults apply when omitted
        verbose: Force DEBUG regardless of the configured level

    Returns:
        The namespace logger, with its handlers replaced
    """
    if config is None:
        from .config import LoggingConfig

        config = LoggingConfig()

    logger = logging.getLogger(NAMESPACE)
    logger.setLevel(logging.DEBUG if verbose else _resolve_level(config.level))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = JSONFormatter() if config.json_format else logging.Formatter(PLAIN_FORMAT)

    # stdout belongs to CLI output and hook responses
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if config.log_file:
        path = os.path.expanduser(config.log_file)
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger under the kiro_memory namespace; ``"db"`` maps to ``kiro_memory.db``."""
    if name == NAMESPACE or name.startswith(NAMESPACE + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{NAMESPACE}.{name}")


def _log_elapsed(
    logger: logging.Logger,
    operation: str,
    start: float,
    level: int,
    error: Optional[BaseException] = None,
) -> None:
    duration_ms = (time.perf_counter() - start) * 1000
    extra = {"duration_ms": duration_ms, "operation": operation}
    if error is None:
        logger.log(level, f"{operation} completed in {duration_ms:.2f}ms", extra=extra)
    else:
        logger.error(f"{operation} failed after {duration_ms:.2f}ms: {error}", extra=extra, exc_info=error)


@contextmanager
def log_duration(logger: logging.Logger, operation: str, level: int = logging.DEBUG):
    """
    Time a block and log how long it took, or how long until it failed.

    Usage:
        with log_duration(logger, "migration 3"):
            await migration.apply(conn)
    """
    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        _log_elapsed(logger, operation, start, level, error=e)
        raise
    _log_elapsed(logger, operation, start, level)


def log_async_duration(operation: str, level: int = logging.DEBUG):
    """
    Decorator form of ``log_duration`` for coroutines.

    Usage:
        @log_async_duration("hybrid search")
        async def hybrid_search(self, query, ...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        logger = get_logger(func.__module__)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            with log_duration(logger, operation, level):
                return await func(*args, **kwargs)

        return wrapper
    return decorator
