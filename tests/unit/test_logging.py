from __future__ import annotations

import logging

import pytest

from mailgate.config import ConfigError, LoggingConfig
from mailgate.logging import ConsoleFormatter, configure_logging, level_from_string


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("imapclient").setLevel(logging.NOTSET)


def test_configure_logging_writes_main_log(tmp_path):
    log_dir = configure_logging(LoggingConfig(level="info"), tmp_path)

    logging.getLogger("mailgate.test").info("hello from test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_dir == tmp_path / "logs"
    assert "hello from test" in (log_dir / "mailgate.log").read_text(encoding="utf-8")
    assert not (log_dir / "debug.log").exists()


def test_debug_file_captures_debug_records(tmp_path):
    configure_logging(LoggingConfig(level="debug", debug_file=True), tmp_path)

    logging.getLogger("mailgate.test").debug("fine detail")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "fine detail" in (tmp_path / "logs" / "debug.log").read_text(encoding="utf-8")
    assert "fine detail" not in (tmp_path / "logs" / "mailgate.log").read_text(encoding="utf-8")
    assert logging.getLogger("imapclient").level == logging.DEBUG


def test_imapclient_is_quieted_without_debug_file(tmp_path):
    configure_logging(LoggingConfig(level="debug"), tmp_path)

    assert logging.getLogger("imapclient").level == logging.WARNING


def test_level_from_string():
    assert level_from_string(" Warn ") == logging.WARNING
    with pytest.raises(ConfigError):
        level_from_string("chatty")


def test_console_formatter_tags_level():
    record = logging.LogRecord("mailgate.orchestrator", logging.INFO, __file__, 1, "moved %s", (3,), None)

    assert ConsoleFormatter(use_color=False).format(record) == "info  moved 3"


def test_console_formatter_names_foreign_loggers():
    record = logging.LogRecord("imapclient", logging.WARNING, __file__, 1, "careful", None, None)

    assert ConsoleFormatter(use_color=False).format(record) == "warn  [imapclient] careful"
    assert ConsoleFormatter(use_color=True).format(record) == "\x1b[33mwarn \x1b[0m [imapclient] careful"
