"""Tests for logger module.

Tests logging configuration, handlers, and request-context enrichment.
"""

from __future__ import annotations

import json
import logging

from pathlib import Path
from unittest.mock import Mock, patch

from utils.logger import (
    ColoredConsoleFormatter,
    ErrorFilter,
    GatewayLogger,
    QuietRotatingFileHandler,
    logger as global_logger,
    setup_logging,
)


def make_record(level: int, msg: str = "test", name: str = "test", args: tuple = ()) -> logging.LogRecord:
    return logging.LogRecord(name=name, level=level, pathname="", lineno=0, msg=msg, args=args, exc_info=None)


class TestErrorFilter:
    """Tests for ErrorFilter class."""

    def test_filter_allows_error(self) -> None:
        assert ErrorFilter().filter(make_record(logging.ERROR)) is True

    def test_filter_allows_critical(self) -> None:
        assert ErrorFilter().filter(make_record(logging.CRITICAL)) is True

    def test_filter_blocks_warning(self) -> None:
        assert ErrorFilter().filter(make_record(logging.WARNING)) is False


class TestColoredConsoleFormatter:
    def test_plain_record(self) -> None:
        line = ColoredConsoleFormatter().format(make_record(logging.INFO, "hello %s", args=("world",)))

        assert "[INFO]" in line
        assert line.endswith("test - hello world")

    def test_uvicorn_access_record(self) -> None:
        record = make_record(
            logging.INFO,
            '%s - "%s %s HTTP/%s" %d',
            name="uvicorn.access",
            args=("127.0.0.1:5000", "POST", "/generate", "1.1", 503),
        )

        line = ColoredConsoleFormatter().format(record)

        assert "/generate" in line
        assert f"{ColoredConsoleFormatter.RED}503" in line


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_logging_creates_logger(self, tmp_path: Path) -> None:
        logger = setup_logging("test-logger", log_dir=tmp_path)

        assert logger.name == "test-logger"
        assert logger.level == logging.DEBUG
        assert logger.propagate is False

    def test_setup_logging_with_debug_enabled(self, tmp_path: Path) -> None:
        logger = setup_logging("test-debug", debug=True, log_dir=tmp_path)

        console = logger.handlers[0]
        assert console.level == logging.DEBUG

    def test_setup_logging_with_debug_disabled(self, tmp_path: Path) -> None:
        logger = setup_logging("test-no-debug", debug=False, log_dir=tmp_path)

        console = logger.handlers[0]
        assert console.level == logging.INFO

    def test_setup_logging_respects_debug_env_var(self, tmp_path: Path) -> None:
        with patch.dict("os.environ", {"GATEWAY_DEBUG": "true"}):
            logger = setup_logging("test-env-debug", log_dir=tmp_path)

        assert logger.handlers[0].level == logging.DEBUG

    def test_setup_logging_replaces_existing_handlers(self, tmp_path: Path) -> None:
        existing = logging.getLogger("test-clear-handlers")
        existing.addHandler(logging.NullHandler())

        logger = setup_logging("test-clear-handlers", log_dir=tmp_path)

        # console, gateway.jsonl, errors.jsonl
        assert len(logger.handlers) == 3
        assert not any(isinstance(h, logging.NullHandler) for h in logger.handlers)

    def test_json_files_written(self, tmp_path: Path) -> None:
        logger = setup_logging("test-json", debug=False, log_dir=tmp_path)

        logger.info("Request started", extra={"request_id": "req_1", "tool": "codex"})
        logger.error("Spawn failed")
        for handler in logger.handlers:
            handler.flush()

        main_lines = (tmp_path / "gateway.jsonl").read_text().splitlines()
        error_lines = (tmp_path / "errors.jsonl").read_text().splitlines()
        first = json.loads(main_lines[0])
        assert first["message"] == "Request started"
        assert first["request_id"] == "req_1"
        assert first["tool"] == "codex"
        assert len(main_lines) == 2
        assert [json.loads(line)["message"] for line in error_lines] == ["Spawn failed"]

    def test_unwritable_log_dir_keeps_console(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")

        logger = setup_logging("test-no-files", log_dir=blocker / "logs")

        assert len(logger.handlers) == 1

    def test_file_errors_are_dropped(self, tmp_path: Path) -> None:
        handler = QuietRotatingFileHandler(tmp_path / "x.jsonl", delay=True)

        assert handler.handleError(make_record(logging.INFO)) is None


class TestGatewayLogger:
    """Tests for GatewayLogger class."""

    def test_global_logger_instance(self) -> None:
        assert isinstance(global_logger, GatewayLogger)
        assert global_logger.name == "cli-gateway"

    def test_info_passes_fields(self) -> None:
        gateway_logger = GatewayLogger("test-fields")
        gateway_logger.logger = Mock()

        gateway_logger.info("Spawned", tool="claude", pid=42)

        gateway_logger.logger.info.assert_called_once_with("Spawned", extra={"tool": "claude", "pid": 42})

    def test_error_with_exc_info(self) -> None:
        gateway_logger = GatewayLogger("test-error")
        gateway_logger.logger = Mock()

        gateway_logger.error("Failed", exc_info=True)

        gateway_logger.logger.error.assert_called_once_with("Failed", extra={}, exc_info=True)

    def test_context_injection(self) -> None:
        gateway_logger = GatewayLogger("test-context")
        gateway_logger.logger = Mock()
        ctx = Mock()
        ctx.to_log_context.return_value = {"request_id": "req_abc", "tool": "gemini"}

        with patch("utils.logger.get_request_context", return_value=ctx):
            gateway_logger.warning("Retrying", tool="override")

        extra = gateway_logger.logger.warning.call_args.kwargs["extra"]
        assert extra == {"request_id": "req_abc", "tool": "override"}

    def test_configure_repoints_handlers(self, tmp_path: Path) -> None:
        gateway_logger = GatewayLogger("test-configure")

        gateway_logger.configure(debug=True, log_dir=tmp_path / "custom")

        assert (tmp_path / "custom").is_dir()
        assert gateway_logger.logger.handlers[0].level == logging.DEBUG
