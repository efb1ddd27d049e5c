"""
Tests for structured logging setup.
"""

import logging

import pytest
import structlog

from tracematrix.core.config import Settings
from tracematrix.core.logging import LogContext, bind_context, clear_context, setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()
    clear_context()


def test_log_context_binds_and_unbinds():
    clear_context()
    bind_context(request="r1")

    with LogContext(project_key="p1", mode="update"):
        assert structlog.contextvars.get_contextvars() == {
            "request": "r1",
            "project_key": "p1",
            "mode": "update",
        }

    assert structlog.contextvars.get_contextvars() == {"request": "r1"}
    clear_context()
    assert structlog.contextvars.get_contextvars() == {}


def test_setup_logging_uses_json_outside_development(restore_logging):
    settings = Settings(_env_file=None, app_env="production", log_level="warning")

    setup_logging(settings)

    root = logging.getLogger()
    assert root.level == logging.WARNING
    assert len(root.handlers) == 1
    formatter = root.handlers[0].formatter
    assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
    assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)


def test_setup_logging_uses_console_in_development(restore_logging):
    setup_logging(Settings(_env_file=None, app_env="development"))

    formatter = logging.getLogger().handlers[0].formatter
    assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)
