"""Tests for logging setup and structured loggers."""

import logging

from rolloutctl.core.logging import LogLevel, StructuredLogger, get_logger, setup_logging


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_rerun_replaces_handler(self):
        logger = setup_logging(LogLevel.INFO, rich_output=False)
        handlers = len(logger.handlers)

        setup_logging(LogLevel.DEBUG, rich_output=True)

        assert len(logger.handlers) == handlers
        assert logger.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        setup_logging()

    def test_names_under_package(self):
        assert get_logger("rollout.plans").name == "rolloutctl.rollout.plans"
        assert get_logger("rolloutctl.cli").name == "rolloutctl.cli"


class TestStructuredLogger:
    """Tests for StructuredLogger."""

    def test_context_appended(self, caplog):
        log = StructuredLogger("rollout.test").bind(target="site-a")

        with caplog.at_level(logging.INFO, logger="rolloutctl"):
            log.info("Converged", version="2.0")
            log.debug("hidden")

        assert [r.getMessage() for r in caplog.records] == ["Converged [target=site-a version=2.0]"]
        assert caplog.records[0].name == "rolloutctl.rollout.test"

    def test_bind_does_not_leak(self, caplog):
        base = StructuredLogger("rollout.test")
        base.bind(target="site-a")

        with caplog.at_level(logging.INFO, logger="rolloutctl"):
            base.warning("plain")

        assert caplog.records[0].getMessage() == "plain"
