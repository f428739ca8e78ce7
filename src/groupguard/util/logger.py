"""
Logging for GroupGuard.

Every module calls ``get_logger(name)`` once at import time. The returned
logger writes INFO and above to the console through prompt_toolkit, so log
lines scroll above the interactive prompt, and everything from DEBUG up to a
rotating per-session file under ``logs/``.

Environment:
    GROUPGUARD_LOG_DIR    directory for session log files (default ``<project>/logs``)
    GROUPGUARD_LOG_LEVEL  console level name (default ``INFO``)
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from prompt_toolkit import print_formatted_text
from prompt_toolkit.formatted_text import ANSI

LOGS_DIR: Path = Path(os.getenv("GROUPGUARD_LOG_DIR") or Path(__file__).parents[3] / "logs").resolve()
LOGS_DIR.mkdir(parents=True, exist_ok=True)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H-%M-%S"
SESSION_REUSE_SECONDS = 60

LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5

LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[38;5;88m",
}
RESET_COLOR = "\033[0m"

LOG_FILEPATH: Path | None = None


class ColorFormatter(logging.Formatter):
    """Wraps each formatted record in the ANSI colour of its level."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        return f"{color}{text}{RESET_COLOR}" if color else text


class PromptToolkitHandler(logging.Handler):
    """Emit records with ``print_formatted_text`` so the console prompt is redrawn below them."""

    def __init__(self, formatter: logging.Formatter | None = None):
        super().__init__()
        if formatter:
            self.setFormatter(formatter)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            print_formatted_text(ANSI(self.format(record)))
        except Exception:
            self.handleError(record)


def should_use_color() -> bool:
    try:
        return sys.stderr.isatty()
    except Exception:
        return False


def console_level() -> int:
    level = logging.getLevelName((os.getenv("GROUPGUARD_LOG_LEVEL") or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


plain_formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
console_formatter = ColorFormatter(LOG_FORMAT, datefmt=DATE_FORMAT) if should_use_color() else plain_formatter


def get_log_filepath() -> Path:
    """
    Session log file shared by every logger.

    A quick restart (today's newest file touched within ``SESSION_REUSE_SECONDS``)
    keeps appending to that file instead of starting a new one.
    """
    global LOG_FILEPATH
    if LOG_FILEPATH is not None:
        return LOG_FILEPATH

    now = datetime.now()
    todays_logs = sorted(
        LOGS_DIR.glob(f"{now:%Y-%m-%d}*.log"), key=lambda path: path.stat().st_mtime, reverse=True
    )
    if todays_logs and now.timestamp() - todays_logs[0].stat().st_mtime < SESSION_REUSE_SECONDS:
        LOG_FILEPATH = todays_logs[0]
    else:
        LOG_FILEPATH = LOGS_DIR / f"{now.strftime(DATE_FORMAT)}.log"
    return LOG_FILEPATH


def setup_logger(logger_name: str) -> logging.Logger:
    """Attach the console and file handlers to ``logger_name`` once and return it."""
    logger = logging.getLogger(logger_name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    console_handler = PromptToolkitHandler(formatter=console_formatter)
    console_handler.setLevel(console_level())
    logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        get_log_filepath(), maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(plain_formatter)
    logger.addHandler(file_handler)
    return logger


def get_logger(logger_name: str) -> logging.Logger:
    return setup_logger(logger_name)


def handle_exception(exception_type, exception_instance, exception_traceback) -> None:
    """``sys.excepthook`` replacement. Ctrl+C keeps the default behaviour."""
    if issubclass(exception_type, KeyboardInterrupt):
        sys.__excepthook__(exception_type, exception_instance, exception_traceback)
        return
    logging.error("Uncaught exception", exc_info=(exception_type, exception_instance, exception_traceback))


# Third-party loggers clamped to ERROR
NOISY_LOGGERS = ["discord", "discord.webhook", "discord.http", "aiohttp", "aiosqlite", "asyncio"]

for noisy_name in NOISY_LOGGERS:
    noisy = logging.getLogger(noisy_name)
    noisy.setLevel(logging.ERROR)
    noisy.propagate = False
    noisy.handlers = []

sys.excepthook = handle_exception
