"""
Logging setup shared by every Wardcord process.

Each process writes one session file named after its start time and pid,
so several shard or worker processes can share ``logs/`` without two
rotating handlers fighting over one file. Console output goes through
prompt_toolkit so log lines do not tear an attached interactive prompt.
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from prompt_toolkit import print_formatted_text
from prompt_toolkit.formatted_text import ANSI

LOGS_DIR: Path = Path(os.environ.get("WARDCORD_LOG_DIR") or Path(__file__).parents[3] / "logs").resolve()
LOGS_DIR.mkdir(parents=True, exist_ok=True)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H-%M-%S"

LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[38;5;88m",
}
RESET_COLOR = "\033[0m"

MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

# Third-party loggers only worth hearing from on errors
NOISY_LOGGERS = (
    "discord",
    "discord.gateway",
    "discord.client",
    "discord.http",
    "aiosqlite",
    "redis",
    "websockets",
    "aiohttp",
)

_session_file: Path | None = None
_shared_handlers: list[logging.Handler] = []


class ColorFormatter(logging.Formatter):
    """Wraps each formatted record in the ANSI colour of its level."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        return f"{color}{text}{RESET_COLOR}" if color else text


class PromptToolkitHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            print_formatted_text(ANSI(self.format(record)))
        except Exception:
            self.handleError(record)


def should_use_color() -> bool:
    """True when stderr is a terminal."""
    isatty = getattr(sys.stderr, "isatty", None)
    return bool(isatty and isatty())


def get_log_filepath() -> Path:
    """
    Path of this process's session log file.

    Picked on first call and cached, so every logger of the process
    appends to the same file.
    """
    global _session_file

    if _session_file is None:
        stamp = datetime.now().strftime(DATE_FORMAT)
        _session_file = LOGS_DIR / f"{stamp}_{os.getpid()}.log"
    return _session_file


def _build_handlers() -> list[logging.Handler]:
    if not _shared_handlers:
        console = PromptToolkitHandler(level=logging.INFO)
        formatter_cls = ColorFormatter if should_use_color() else logging.Formatter
        console.setFormatter(formatter_cls(LOG_FORMAT, datefmt=DATE_FORMAT))

        session_file = RotatingFileHandler(
            get_log_filepath(),
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        session_file.setLevel(logging.DEBUG)
        session_file.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

        _shared_handlers.extend([console, session_file])
    return _shared_handlers


def setup_logger(logger_name: str) -> logging.Logger:
    """Attach the process-wide console and file handlers to ``logger_name`` once."""
    logger = logging.getLogger(logger_name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in _build_handlers():
        logger.addHandler(handler)
    return logger


def get_logger(logger_name: str) -> logging.Logger:
    return setup_logger(logger_name)


def quiet_noisy_loggers() -> None:
    for name in NOISY_LOGGERS:
        noisy = logging.getLogger(name)
        noisy.setLevel(logging.ERROR)
        noisy.propagate = False
        noisy.handlers = []


def handle_exception(exception_type, exception_instance, exception_traceback) -> None:
    """``sys.excepthook`` replacement; Ctrl+C still goes to the default hook."""
    if issubclass(exception_type, KeyboardInterrupt):
        sys.__excepthook__(exception_type, exception_instance, exception_traceback)
        return
    logging.error("Uncaught exception", exc_info=(exception_type, exception_instance, exception_traceback))


quiet_noisy_loggers()
sys.excepthook = handle_exception
