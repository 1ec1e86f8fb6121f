# src/tasklive/logging_setup.py

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)-7s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that log every request / tick at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "realtime", "websockets")


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keeps the REPL readable while the file log stays complete.

    Our own records pass, except the polling change feed below WARNING.
    Everything else (libraries, captured py.warnings) needs ERROR.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not record.name.startswith("tasklive."):
            return record.levelno >= logging.ERROR
        if record.name.startswith("tasklive.store.change_feed"):
            return record.levelno >= logging.WARNING
        return True


def _attach(root: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)


def setup_logging(
    *,
    log_dir: str | Path = ".local/tasklive",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_bytes: int = 2_000_000,
    backup_count: int = 3,
) -> Path:
    """
    Install the stderr + rotating file handlers on the root logger.

    Replaces whatever handlers were there, so calling it twice does not
    duplicate output. Returns the log file path.
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / "tasklive.log"

    root = logging.getLogger()
    root.setLevel(min(console_level, file_level))
    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()

    console = logging.StreamHandler(sys.stderr)
    console.addFilter(_ConsoleNoiseFilter())
    _attach(root, console, console_level)
    _attach(
        root,
        RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"),
        file_level,
    )

    logging.captureWarnings(True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_file
