"""
Tests for process-wide logging setup.
"""

import logging

import pytest

from faultlab.core import logging_config
from faultlab.core.logging_config import QUIET_LOGGERS, get_system_log_path, setup_logging
from faultlab.core.models import CleanupResult


@pytest.fixture
def clean_root(monkeypatch):
    """Restore the root logger and module state after each test."""
    root = logging.getLogger()
    saved_handlers = root.handlers[:]
    saved_level = root.level
    saved_quiet = {name: logging.getLogger(name).level for name in QUIET_LOGGERS}
    monkeypatch.setattr(logging_config, "_logging_configured", False)
    monkeypatch.setattr(logging_config, "_file_handler", None)
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in saved_handlers:
            handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)
    for name, level in saved_quiet.items():
        logging.getLogger(name).setLevel(level)


class TestSetupLogging:
    def test_file_and_console_handlers(self, clean_root, tmp_path):
        setup_logging(level="DEBUG")

        log_file = tmp_path / "logs" / "system.log"
        assert get_system_log_path() == log_file
        assert clean_root.level == logging.DEBUG

        kinds = sorted(type(h).__name__ for h in clean_root.handlers)
        assert kinds == ["RotatingFileHandler", "StreamHandler"]
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

        logging.getLogger("faultlab.test").info("[Test] hello")
        for handler in clean_root.handlers:
            handler.flush()
        text = log_file.read_text(encoding="utf-8")
        assert "LOGGING INITIALIZED - FAULTLAB" in text
        assert "[Test] hello" in text

    def test_level_from_settings(self, clean_root, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "warning")
        setup_logging(log_to_file=False)

        assert clean_root.level == logging.WARNING
        assert [type(h).__name__ for h in clean_root.handlers] == ["StreamHandler"]

    def test_second_call_is_a_no_op_unless_forced(self, clean_root):
        setup_logging(log_to_console=False)
        first = clean_root.handlers[:]

        setup_logging(level="DEBUG")
        assert clean_root.handlers == first

        setup_logging(log_to_file=False, force=True)
        assert len(clean_root.handlers) == 1
        assert type(clean_root.handlers[0]).__name__ == "StreamHandler"
        assert first[0] not in clean_root.handlers


class TestLogHelpers:
    def test_phase_and_cleanup_lines(self, caplog):
        logger = logging.getLogger("faultlab.helpers")
        with caplog.at_level(logging.INFO, logger="faultlab.helpers"):
            logging_config.log_phase(logger, "s1", "capturing", "entered", 12.4)
            logging_config.log_cleanup(logger, "continuous", CleanupResult(deleted_objects=3, errors=["x"]))

        assert "[s1] PHASE | capturing | entered | elapsed=12ms" in caplog.text
        cleanup = [r for r in caplog.records if "deleted=3" in r.getMessage()]
        assert cleanup and cleanup[0].levelno == logging.WARNING
