"""
Logging setup for the CLI gateway using Python's standard logging
with JSON formatting for structured logs.

Log destinations:
- Console (stderr): Human-readable format for debugging
- logs/gateway.jsonl: JSON format for request and lifecycle events
- logs/errors.jsonl: JSON format for error tracking

A failing log destination (full disk, revoked permissions) never raises
into request handling.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys

from pathlib import Path
from typing import Any, cast

from pythonjsonlogger import json as jsonlogger

from api.middleware.request_context import get_request_context
from core.constants import LOG_BACKUP_COUNT, LOG_MAX_SIZE, PROJECT_ROOT

LOGGER_NAME = "cli-gateway"


class ErrorFilter(logging.Filter):
    """Filter to only allow ERROR and CRITICAL logs"""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


class QuietRotatingFileHandler(logging.handlers.RotatingFileHandler):
    """Rotating file handler whose write failures are dropped silently."""

    def handleError(self, record: logging.LogRecord) -> None:  # noqa: N802
        return


class QuietStreamHandler(logging.StreamHandler):  # type: ignore[type-arg]
    """Stream handler that tolerates a closed or broken stderr."""

    def handleError(self, record: logging.LogRecord) -> None:  # noqa: N802
        return


class ColoredConsoleFormatter(logging.Formatter):
    """
    Adds colors to log levels and standardizes format.
    Format: HH:MM:SS [LEVEL] logger_name - message
    """

    GREY = "\x1b[38;20m"
    GREEN = "\x1b[32;20m"
    YELLOW = "\x1b[33;20m"
    RED = "\x1b[31;20m"
    BOLD_RED = "\x1b[31;1m"
    RESET = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        level_fmt = f"{color}[{record.levelname}]{self.RESET}" if color else f"[{record.levelname}]"
        record.asctime = self.formatTime(record, "%H:%M:%S")

        # uvicorn access args: (client_addr, method, full_path, http_version, status_code)
        if record.name == "uvicorn.access" and record.args and len(record.args) == 5:
            client_addr, method, full_path, http_version, status_code = record.args
            status_num = int(cast(Any, status_code))
            if status_num < 400:
                status_fmt = f"{self.GREEN}{status_code}{self.RESET}"
            elif status_num < 500:
                status_fmt = f"{self.YELLOW}{status_code}{self.RESET}"
            else:
                status_fmt = f"{self.RED}{status_code}{self.RESET}"
            message = f'{client_addr} - "\x1b[1m{method}\x1b[0m {full_path} HTTP/{http_version}" {status_fmt}'
            return f"{record.asctime} {level_fmt} {record.name} - {message}"

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return f"{record.asctime} {level_fmt} {record.name} - {message}"


def configure_uvicorn_logging() -> None:
    """Route uvicorn's loggers through the colored console formatter."""
    formatter = ColoredConsoleFormatter()

    logging.getLogger("uvicorn").handlers = []
    logging.getLogger("uvicorn").setLevel(logging.INFO)

    for name in ("uvicorn.access", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers = []
        uv_logger.setLevel(logging.INFO)
        handler = QuietStreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        uv_logger.addHandler(handler)
        uv_logger.propagate = False


def setup_logging(
    name: str = LOGGER_NAME,
    debug: bool | None = None,
    log_dir: Path | None = None,
    max_bytes: int = LOG_MAX_SIZE,
    backup_count: int = LOG_BACKUP_COUNT,
) -> logging.Logger:
    """
    Set up logging with a console handler and rotating JSON file handlers.

    Args:
        name: Logger name
        debug: Enable debug logging (overrides GATEWAY_DEBUG env var)
        log_dir: Directory for JSON logs; file logging is skipped if it cannot be created
        max_bytes: Rotate a log file above this size
        backup_count: Rotated files kept per log

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if debug is None:
        debug = os.getenv("GATEWAY_DEBUG", "false").lower() in ("true", "1", "yes")

    console_handler = QuietStreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(ColoredConsoleFormatter())
    logger.addHandler(console_handler)

    log_dir = log_dir or PROJECT_ROOT / "logs"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        main_handler = QuietRotatingFileHandler(
            log_dir / "gateway.jsonl",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )
        error_handler = QuietRotatingFileHandler(
            log_dir / "errors.jsonl",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )
    except OSError:
        return logger

    main_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    main_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(levelname)s %(message)s %(request_id)s %(tool)s",
            timestamp=True,
        )
    )
    logger.addHandler(main_handler)

    error_handler.setLevel(logging.ERROR)
    error_handler.addFilter(ErrorFilter())
    error_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(levelname)s %(name)s %(message)s",
            timestamp=True,
        )
    )
    logger.addHandler(error_handler)

    return logger


class GatewayLogger:
    """
    High-level logging interface for the gateway.
    Wraps standard Python logging; keyword arguments become structured fields.
    """

    def __init__(self, name: str = LOGGER_NAME):
        self.name = name
        self.logger = setup_logging(name)

    def configure(
        self,
        debug: bool,
        log_dir: Path,
        max_bytes: int = LOG_MAX_SIZE,
        backup_count: int = LOG_BACKUP_COUNT,
    ) -> None:
        """Re-point handlers once settings are loaded."""
        self.logger = setup_logging(
            self.name,
            debug=debug,
            log_dir=log_dir,
            max_bytes=max_bytes,
            backup_count=backup_count,
        )

    def _enrich_context(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        if ctx := get_request_context():
            for key, value in ctx.to_log_context().items():
                kwargs.setdefault(key, value)
        return kwargs

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=self._enrich_context(kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=self._enrich_context(kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=self._enrich_context(kwargs))

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Error level logging with optional exception info"""
        self.logger.error(message, extra=self._enrich_context(kwargs), exc_info=exc_info)


# Global logger instance
logger = GatewayLogger()
