import logging
import os
from logging.handlers import RotatingFileHandler

from wardcord.util.logger import (
    ColorFormatter,
    NOISY_LOGGERS,
    PromptToolkitHandler,
    get_log_filepath,
    get_logger,
    handle_exception,
    setup_logger,
    should_use_color,
)


class DummyStream:
    def __init__(self, tty=True):
        self.written = []
        self.tty = tty

    def write(self, msg):
        self.written.append(msg)

    def isatty(self):
        return self.tty


def test_get_logger_returns_logger():
    logger = get_logger("test_logger")
    assert isinstance(logger, logging.Logger)
    assert any(isinstance(h, PromptToolkitHandler) for h in logger.handlers)
    assert any(isinstance(h, RotatingFileHandler) for h in logger.handlers)


def test_setup_logger_idempotent():
    logger1 = setup_logger("test_logger_idem")
    logger2 = setup_logger("test_logger_idem")
    assert logger1 is logger2
    assert len(logger1.handlers) == 2
    assert logger1.propagate is False


def test_color_formatter_applies_color():
    formatter = ColorFormatter("%(levelname)s %(message)s")
    record = logging.LogRecord("test", logging.ERROR, "", 0, "error occurred", None, None)
    formatted = formatter.format(record)
    assert "\033[31m" in formatted and "error occurred" in formatted
    assert formatted.endswith("\033[0m")


def test_should_use_color(monkeypatch):
    monkeypatch.setattr("sys.stderr", DummyStream(tty=True))
    assert should_use_color() is True
    monkeypatch.setattr("sys.stderr", DummyStream(tty=False))
    assert should_use_color() is False


def test_get_log_filepath_is_cached_per_process():
    path = get_log_filepath()
    assert path.parent.exists()
    assert path.suffix == ".log"
    assert path.stem.endswith(f"_{os.getpid()}")
    assert get_log_filepath() == path


def test_loggers_share_session_handlers():
    first = get_logger("test_logger_shared_a")
    second = get_logger("test_logger_shared_b")
    assert first.handlers == second.handlers
    console = next(h for h in first.handlers if isinstance(h, PromptToolkitHandler))
    assert console.level == logging.INFO


def test_noisy_loggers_are_silenced():
    for name in NOISY_LOGGERS:
        assert logging.getLogger(name).level == logging.ERROR


def test_handle_exception_logs_error(caplog):
    class DummyException(Exception):
        pass

    with caplog.at_level(logging.ERROR):
        try:
            raise DummyException("fail")
        except DummyException as exc:
            handle_exception(DummyException, exc, exc.__traceback__)
    assert any("Uncaught exception" in r.message for r in caplog.records)
