# =============================================================================
# tests/unit/test_logging_config.py
# Unit Tests for Logging Configuration
# =============================================================================

import logging
import pytest


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Test process-wide logging setup"""

    def test_file_handler(self, tmp_path, restore_root_logger):
        from mymeds_core.logging import setup_logging

        setup_logging(level=logging.DEBUG, log_to_file=True, log_filename="test.log", log_dir=tmp_path / "logs")
        logging.getLogger("mymeds_core.offline").debug("cache hit for reminders_u1")
        for handler in restore_root_logger.handlers:
            handler.flush()

        content = (tmp_path / "logs" / "test.log").read_text()
        assert "Logging initialized" in content
        assert "mymeds_core.offline | DEBUG | cache hit for reminders_u1" in content

    def test_noisy_loggers_lowered(self, restore_root_logger):
        from mymeds_core.logging import setup_logging

        setup_logging()

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("postgrest").level == logging.WARNING


class TestLogContext:
    """Test operation timing"""

    def test_completed(self, caplog):
        from mymeds_core.logging import LogContext, get_logger

        logger = get_logger("mymeds_core.tests.timing")
        with caplog.at_level(logging.INFO, logger=logger.name):
            with LogContext(logger, "Fetching reminders_u1") as ctx:
                pass

        messages = [r.getMessage() for r in caplog.records]
        assert messages[0] == "Fetching reminders_u1... started"
        assert messages[1].startswith("Fetching reminders_u1... completed (")
        assert ctx.elapsed >= 0

    def test_failure_logged_and_raised(self, caplog):
        from mymeds_core.logging import LogContext, get_logger

        logger = get_logger("mymeds_core.tests.timing")
        with caplog.at_level(logging.INFO, logger=logger.name):
            with pytest.raises(ConnectionError):
                with LogContext(logger, "Fetching prescriptions_u1"):
                    raise ConnectionError("reset by peer")

        assert caplog.records[-1].levelno == logging.WARNING
        assert "failed" in caplog.records[-1].getMessage()
        assert "reset by peer" in caplog.records[-1].getMessage()

    @pytest.mark.asyncio
    async def test_async_form(self, caplog):
        from mymeds_core.logging import LogContext, get_logger

        logger = get_logger("mymeds_core.tests.timing")
        with caplog.at_level(logging.INFO, logger=logger.name):
            async with LogContext(logger, "Replaying update") as ctx:
                pass

        assert ctx.elapsed is not None
        assert caplog.records[-1].getMessage().startswith("Replaying update... completed")
