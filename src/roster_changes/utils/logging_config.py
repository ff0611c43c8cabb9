"""Centralized logging configuration for the change tracking engine."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from roster_changes.models.config import LoggingConfig

# Loggers the SQL ledger backend emits through; kept quieter than the engine
SQL_LOGGERS = ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool")


def _numeric_level(level: str) -> int:
    return getattr(logging, level.upper(), logging.INFO)


def _add_file_handler(log_file: str, level: int) -> None:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    target = os.path.abspath(path)

    for handler in logging.root.handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == target:
            handler.setLevel(level)
            return

    # 10MB per file, 5 backups
    file_handler = RotatingFileHandler(
        target,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
    )
    file_handler.setLevel(level)
    logging.root.addHandler(file_handler)


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            ],
        ),
    ]


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = True,
    log_file: str | None = None,
    sql_log_level: str = "WARNING",
) -> None:
    """
    Configure structured logging for the engine.

    This function sets up structlog with:
    - JSON formatting for production (when json_logs=True)
    - Console formatting for development (when json_logs=False)
    - Context variables bound with ``structlog.contextvars`` (session_id,
      integration_id) merged into every entry, including worker threads
    - Optional rotating file output; calling again with the same file does
      not add a second handler

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, output JSON logs. If False, use console format.
        log_file: Optional path to log file. If None, logs only to stdout.
        sql_log_level: Level for the sqlalchemy loggers of the SQL ledger

    Example:
        >>> configure_logging(log_level="DEBUG", json_logs=False)
        >>> log = structlog.stdlib.get_logger()
        >>> log.info("tracking_session_started", session_id="session_1")
    """
    numeric_level = _numeric_level(log_level)

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        stream=sys.stdout,
    )
    logging.root.setLevel(numeric_level)

    if log_file:
        _add_file_handler(log_file, numeric_level)

    for name in SQL_LOGGERS:
        logging.getLogger(name).setLevel(_numeric_level(sql_log_level))

    processors = _shared_processors()
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging_from_config(config: LoggingConfig) -> None:
    """Configure logging from the ``logging`` section of AppConfig."""
    configure_logging(
        log_level=config.log_level,
        json_logs=config.json_logs,
        log_file=config.log_file,
        sql_log_level=config.sql_log_level,
    )
