"""Unit tests for the structlog logging configuration."""

import logging

import structlog

from mapbot.logging_config import setup_logging


class TestSetupLogging:
    def test_setup_logging_runs_without_error_debug(self):
        setup_logging(debug=True)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("turn_completed", tools_used=["geocode"], map_action=True)

    def test_setup_logging_runs_without_error_production(self):
        setup_logging(debug=False)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("tool_call_ok", tool="search_places", result_count=3)

    def test_http_client_logs_quieted(self):
        setup_logging(debug=False)
        assert logging.getLogger("httpx").level == logging.WARNING


class TestStructlogContextBinding:
    def test_session_binding_works(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(session_id="a1b2c3d4e5f6")

        assert structlog.contextvars.get_contextvars()["session_id"] == "a1b2c3d4e5f6"

        structlog.contextvars.unbind_contextvars("session_id")
        assert structlog.contextvars.get_contextvars() == {}

    def test_context_cleared_between_connections(self):
        structlog.contextvars.bind_contextvars(session_id="sess-1")
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(session_id="sess-2")

        assert structlog.contextvars.get_contextvars()["session_id"] == "sess-2"
        structlog.contextvars.clear_contextvars()
