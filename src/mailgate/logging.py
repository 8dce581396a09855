"""Logging setup: rotating log files plus a colourised console stream."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import ConfigError, LoggingConfig

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
MAIN_LOG_NAME = "mailgate.log"
DEBUG_LOG_NAME = "debug.log"
LOG_MAX_BYTES = 5_000_000
LOG_BACKUPS = 5

# IMAPClient logs every protocol line at DEBUG.
NOISY_LOGGERS = ("imapclient",)

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class ConsoleFormatter(logging.Formatter):
    """Fixed-width lowercase level tag; records from other libraries carry their logger name."""

    LEVEL_STYLES: dict[str, tuple[str, str]] = {
        "DEBUG": ("debug", "2"),
        "INFO": ("info", "32"),
        "WARNING": ("warn", "33"),
        "ERROR": ("error", "31"),
        "CRITICAL": ("fatal", "1;31"),
    }

    def __init__(self, use_color: bool) -> None:
        super().__init__("%(message)s")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        tag, sgr = self.LEVEL_STYLES.get(record.levelname, (record.levelname.lower(), "0"))
        tag = f"{tag:<5}"
        if self.use_color:
            tag = f"\x1b[{sgr}m{tag}\x1b[0m"
        message = super().format(record)
        if record.name != "mailgate" and not record.name.startswith("mailgate."):
            message = f"[{record.name}] {message}"
        return f"{tag} {message}"


def configure_logging(logging_config: LoggingConfig, root_dir: Path) -> Path:
    """Install handlers on the root logger and return the log directory."""

    level = level_from_string(logging_config.level)
    log_dir = (root_dir / "logs").expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        _file_handler(log_dir / MAIN_LOG_NAME, logging.INFO),
        _console_handler(),
    ]
    if logging_config.debug_file:
        handlers.append(_file_handler(log_dir / DEBUG_LOG_NAME, logging.DEBUG))

    logging.basicConfig(level=level, handlers=handlers, force=True)

    library_level = logging.DEBUG if logging_config.debug_file else max(level, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    return log_dir


def level_from_string(level: str) -> int:
    try:
        return LEVELS[level.strip().upper()]
    except KeyError as exc:
        raise ConfigError(f"Unknown log level: {level}") from exc


def _file_handler(path: Path, level: int) -> logging.Handler:
    handler = RotatingFileHandler(path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG)
    isatty = getattr(handler.stream, "isatty", None)
    handler.setFormatter(ConsoleFormatter(bool(isatty and isatty())))
    return handler


__all__ = ["configure_logging", "level_from_string"]
