"""
Centralized logging configuration for the quality review engine.

Provides structured JSON logging, request-scoped context (caller, card, cycle)
and decorators that trace application operations and repository calls.
"""

from __future__ import annotations

import json
import logging
import logging.config
import os
from collections.abc import Callable
from datetime import UTC, datetime
from functools import wraps
from pathlib import Path
from types import TracebackType
from typing import Any, ParamSpec, TypeVar, cast

P = ParamSpec("P")
R = TypeVar("R")

ROOT_LOGGER = "quality_review"
CONTEXT_FIELDS = ("user_id", "card_id", "cycle_id", "request_id", "operation")


class StructuredFormatter(logging.Formatter):
    """Formatter that outputs one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            if exc_type is not None and exc_value is not None:
                log_entry["exception"] = {
                    "type": exc_type.__name__,
                    "message": str(exc_value),
                    "traceback": self.formatException((exc_type, exc_value, exc_tb)),
                }

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ContextFilter(logging.Filter):
    """Filter that copies the current request context onto log records."""

    def __init__(self):
        super().__init__()
        self.context: dict[str, Any] = {}

    def set_context(self, **kwargs: Any) -> None:
        self.context.update(kwargs)

    def clear_context(self) -> None:
        self.context.clear()

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            setattr(record, key, value)
        return True


context_filter = ContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    structured: bool = True,
    enable_console: bool = True,
) -> None:
    """
    Set up centralized logging configuration.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for rotating file output
        structured: Whether console output uses JSON formatting
        enable_console: Whether to enable console output

    Example:
        >>> setup_logging(level="DEBUG", log_file="./logs/review.log")
    """
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {"()": StructuredFormatter},
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "filters": {"context": {"()": lambda: context_filter}},
        "handlers": {},
        "loggers": {
            ROOT_LOGGER: {"level": level, "handlers": [], "propagate": False},
            "sqlalchemy.engine": {"level": "WARNING", "handlers": [], "propagate": False},
            "uvicorn.access": {"level": "WARNING", "handlers": [], "propagate": False},
        },
        "root": {"level": level, "handlers": []},
    }

    handler_configs = cast(dict[str, dict[str, Any]], config["handlers"])
    logger_configs = cast(dict[str, dict[str, Any]], config["loggers"])
    root_config = cast(dict[str, Any], config["root"])
    handler_names: list[str] = []

    if enable_console:
        handler_configs["console"] = {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "structured" if structured else "standard",
            "filters": ["context"],
            "stream": "ext://sys.stdout",
        }
        handler_names.append("console")

    if log_file:
        handler_configs["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "structured",
            "filters": ["context"],
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
        }
        handler_names.append("file")

    if not handler_names:
        handler_configs["null"] = {"class": "logging.NullHandler"}
        handler_names.append("null")

    for logger_config in logger_configs.values():
        logger_config["handlers"] = list(handler_names)
    root_config["handlers"] = list(handler_names)

    logging.config.dictConfig(config)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger namespaced under ``quality_review``.

    Example:
        >>> get_logger("review.aggregation").name
        'quality_review.review.aggregation'
    """
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def set_context(**kwargs: Any) -> None:
    """
    Set logging context variables.

    Example:
        >>> set_context(user_id=12, cycle_id=40)
    """
    context_filter.set_context(**kwargs)


def clear_context() -> None:
    context_filter.clear_context()


class LogContext:
    """Context manager for temporary logging context."""

    def __init__(self, **kwargs: Any):
        self.context: dict[str, Any] = kwargs
        self.previous_context: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self.previous_context = context_filter.context.copy()
        context_filter.set_context(**self.context)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        context_filter.context = self.previous_context


def log_operation(
    operation: str, logger: logging.Logger | None = None
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator for logging application operations.

    Example:
        >>> @log_operation("submit_evaluation")
        ... def submit_evaluation(session, user_id, cycle_id, scores):
        ...     pass
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            func_logger = logger or get_logger(func.__module__)

            with LogContext(operation=operation):
                func_logger.info(f"Starting {operation}")
                try:
                    result = func(*args, **kwargs)
                    func_logger.info(f"Completed {operation} successfully")
                    return result
                except Exception as e:
                    func_logger.error(f"Failed {operation}: {str(e)}", exc_info=True)
                    raise

        return wrapper

    return decorator


def log_database_operation(operation: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator for logging repository calls with their duration.

    Example:
        >>> @log_database_operation("cycle.open")
        ... def open_cycle(self, card_id):
        ...     pass
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            logger = get_logger("database")

            with LogContext(operation=f"db_{operation}"):
                logger.debug(f"Starting database operation: {operation}")
                start_time = datetime.now(UTC)

                try:
                    result = func(*args, **kwargs)
                    duration = (datetime.now(UTC) - start_time).total_seconds()
                    logger.debug(f"Database operation {operation} completed in {duration:.3f}s")
                    return result
                except Exception as e:
                    duration = (datetime.now(UTC) - start_time).total_seconds()
                    logger.error(
                        f"Database operation {operation} failed after {duration:.3f}s: {str(e)}",
                        exc_info=True,
                    )
                    raise

        return wrapper

    return decorator


def configure_development_logging():
    setup_logging(
        level="DEBUG", log_file="./logs/development.log", structured=False, enable_console=True
    )


def configure_production_logging():
    setup_logging(
        level="INFO", log_file="./logs/production.log", structured=True, enable_console=True
    )


def configure_test_logging():
    setup_logging(level="WARNING", log_file=None, structured=False, enable_console=False)


def auto_configure_logging():
    """Configure logging from the ENVIRONMENT variable."""
    env = os.getenv("ENVIRONMENT", "development").lower()

    if env == "production":
        configure_production_logging()
    elif env == "test":
        configure_test_logging()
    else:
        configure_development_logging()

    get_logger(__name__).info(f"Logging configured for {env} environment")


if not logging.getLogger().handlers:
    auto_configure_logging()
