"""Tests for logging setup and display helpers."""

import json
import logging
import sys
from pathlib import Path

from rich.logging import RichHandler

from club_sync.config import LoggingConfig
from club_sync.utils.display import format_duration, format_value
from club_sync.utils.logger import (
    CONSOLE_HANDLERS,
    JsonFormatter,
    get_logger,
    logger,
    setup_logging,
)


class TestJsonFormatter:
    """Test structured log output."""

    def test_extra_fields_included(self) -> None:
        record = logging.makeLogRecord(
            {
                "name": "club_sync.reconciler",
                "levelname": "WARNING",
                "msg": "sync failed for %s",
                "args": ("M001",),
                "entity_type": "member",
                "key": "M001",
            }
        )

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "sync failed for M001"
        assert data["level"] == "WARNING"
        assert data["entity_type"] == "member"
        assert data["key"] == "M001"
        assert "args" not in data

    def test_exception_included(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.makeLogRecord({"msg": "failed", "exc_info": sys.exc_info()})

        data = json.loads(JsonFormatter().format(record))
        assert "ValueError: boom" in data["exception"]


class TestSetupLogging:
    """Test handler configuration."""

    def teardown_method(self) -> None:
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()

    def test_file_handler_added(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "sync.log"
        config = LoggingConfig(format="simple", file=log_file)

        run_id = setup_logging(config, level="debug", run_id="run-42")
        get_logger("club_sync.engine").debug("hello")
        for handler in logger.handlers:
            handler.flush()

        assert run_id == "run-42"
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
        line = log_file.read_text()
        assert "hello" in line
        assert "run-42" in line
        assert "club_sync.engine" in line

    def test_unknown_level_falls_back_to_info(self) -> None:
        run_id = setup_logging(LoggingConfig(format="json"), level="chatty")

        assert logger.level == logging.INFO
        assert isinstance(logger.handlers[0].formatter, JsonFormatter)
        assert len(run_id) == 12

    def test_json_lines_carry_run_id(self, capsys) -> None:
        setup_logging(LoggingConfig(format="json"), run_id="run-7")

        logger.info("synced", extra={"entity_type": "team"})

        data = json.loads(capsys.readouterr().out.strip())
        assert data["run_id"] == "run-7"
        assert data["entity_type"] == "team"

    def test_request_logs_quieted(self) -> None:
        setup_logging(LoggingConfig(format="simple"), level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_console_handler_per_format(self) -> None:
        assert set(CONSOLE_HANDLERS) == {"rich", "json", "simple"}
        setup_logging(LoggingConfig())
        assert isinstance(logger.handlers[0], RichHandler)


class TestDisplayHelpers:
    def test_format_duration(self) -> None:
        assert format_duration(4.3) == "4.3s"
        assert format_duration(125) == "2m05s"

    def test_format_value(self) -> None:
        assert format_value(None) == "[dim]-[/dim]"
        assert format_value(3) == "3"
