"""
Tests for logging configuration helpers
"""

import logging

import pytest

from stat_tracker.config.persistence_settings import PersistenceSettings
from stat_tracker.database.lifecycle_manager import DatabaseLifecycleManager
from stat_tracker.logging_config import (
    DATABASE_LOGGERS,
    ColoredFormatter,
    configure_module_logger,
    log_exception,
    setup_database_logging,
    setup_logging,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def reset_database_loggers():
    yield
    for name in DATABASE_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)


class TestSetupLogging:

    def test_file_handlers_created(self, tmp_path, restore_root_logger):
        log_dir = tmp_path / "logs"

        setup_logging(level="DEBUG", log_dir=str(log_dir), enable_console=False)
        logging.getLogger("stat_tracker.test").error("disk on fire")
        for handler in restore_root_logger.handlers:
            handler.flush()

        assert (log_dir / "stat_tracker.log").exists()
        assert (log_dir / "stat_tracker_debug.log").exists()
        assert "disk on fire" in (log_dir / "stat_tracker_error.log").read_text(encoding="utf-8")

    def test_console_only(self, tmp_path, restore_root_logger):
        setup_logging(level="WARNING", log_dir=str(tmp_path / "unused"), enable_file=False)

        assert restore_root_logger.level == logging.WARNING
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, ColoredFormatter)
        assert not (tmp_path / "unused").exists()


class TestColoredFormatter:

    def test_levelname_not_leaked(self):
        formatter = ColoredFormatter("%(levelname)s %(message)s")
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, None)

        text = formatter.format(record)

        assert "\033[31m" in text
        assert record.levelname == "ERROR"


class TestModuleLoggers:

    def test_configure_module_logger(self):
        logger = configure_module_logger("stat_tracker.test_module", level="ERROR", propagate=False)
        try:
            assert logger.level == logging.ERROR
            assert not logger.propagate
        finally:
            logger.setLevel(logging.NOTSET)
            logger.propagate = True

    def test_database_logging_levels(self, reset_database_loggers):
        setup_database_logging("ERROR")

        assert logging.getLogger("stat_tracker.database.drivers").level == logging.ERROR
        assert logging.getLogger("stat_tracker.database.drivers.StatTracker").getEffectiveLevel() == logging.ERROR
        # lifecycle state changes are not quieted
        assert logging.getLogger("stat_tracker.database.lifecycle_manager").level == logging.NOTSET

    def test_manager_applies_configured_level(self, tmp_path, reset_database_loggers):
        DatabaseLifecycleManager(PersistenceSettings(data_root=tmp_path, database_log_level="error"))

        for name in DATABASE_LOGGERS:
            assert logging.getLogger(name).level == logging.ERROR

    def test_manager_leaves_levels_alone_by_default(self, tmp_path, reset_database_loggers):
        DatabaseLifecycleManager(PersistenceSettings(data_root=tmp_path))

        for name in DATABASE_LOGGERS:
            assert logging.getLogger(name).level == logging.NOTSET

    def test_log_exception_includes_context(self, caplog):
        logger = logging.getLogger("stat_tracker.test_exceptions")
        try:
            raise ValueError("bad stats")
        except ValueError as e:
            with caplog.at_level("ERROR"):
                log_exception(logger, e, context={"player_uid": "765"})

        assert "player_uid=765" in caplog.text
        assert "ValueError: bad stats" in caplog.text
