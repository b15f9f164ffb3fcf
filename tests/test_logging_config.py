"""
test_logging_config.py — Tests for app/logging_config.py

Loguru setup per environment, stdlib interception and the request-id
context the middleware binds.

Called by: pytest
Depends on: app/logging_config.py
"""

import logging
import os
from unittest.mock import patch

import pytest
from loguru import logger

from app.logging_config import setup_logging


@pytest.fixture(autouse=True)
def _clean_loguru():
    logger.remove()
    yield
    logger.remove()


def _capture(level: str = "DEBUG") -> list[str]:
    messages: list[str] = []
    logger.add(lambda m: messages.append(str(m)), level=level, format="{message}")
    return messages


def test_setup_adds_a_stdout_sink():
    with patch.dict(os.environ, {"APP_ENV": "development"}):
        setup_logging()
    assert len(logger._core.handlers) >= 1


def test_stdlib_records_reach_loguru():
    with patch.dict(os.environ, {"APP_ENV": "development"}):
        setup_logging()
    messages = _capture()

    logging.getLogger("app.connectors.google_cse").warning("провайдер недоступен")

    assert any("провайдер недоступен" in m for m in messages)


def test_noisy_libraries_are_quieted():
    setup_logging()
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_log_level_from_env():
    with patch.dict(os.environ, {"LOG_LEVEL": "WARNING"}):
        setup_logging()
    messages = _capture("WARNING")

    logger.info("отфильтровано")
    logger.warning("видно")

    assert any("видно" in m for m in messages)
    assert not any("отфильтровано" in m for m in messages)


def test_production_serializes_json():
    with patch.dict(os.environ, {"APP_ENV": "production"}, clear=False):
        with patch("loguru.logger.add") as mock_add:
            setup_logging()
    assert any(c.kwargs.get("serialize") is True for c in mock_add.call_args_list)


def test_development_is_colored_not_serialized():
    with patch.dict(os.environ, {"APP_ENV": "development", "LOG_FILE": ""}):
        with patch("loguru.logger.add") as mock_add:
            setup_logging()
    assert mock_add.call_args_list
    assert all(c.kwargs.get("serialize") is not True for c in mock_add.call_args_list)


def test_log_file_sink_rotates():
    with patch.dict(os.environ, {"APP_ENV": "development", "LOG_FILE": "/tmp/procuredesk.log"}):
        with patch("loguru.logger.add") as mock_add:
            setup_logging()
    file_calls = [c for c in mock_add.call_args_list if c.args and c.args[0] == "/tmp/procuredesk.log"]
    assert len(file_calls) == 1
    assert file_calls[0].kwargs["rotation"] == "50 MB"


def test_request_id_context_is_scoped():
    records = []
    logger.add(lambda m: records.append(m.record), format="{message}")

    with logger.contextualize(request_id="a1b2c3d4"):
        logger.info("внутри")
    logger.info("снаружи")

    assert records[-2]["extra"].get("request_id") == "a1b2c3d4"
    assert "request_id" not in records[-1]["extra"]


def test_console_format_tags_request_id():
    from app.logging_config import _console_format

    assert "{extra[request_id]}" in _console_format({"extra": {"request_id": "a1b2c3d4"}})
    assert "--------" in _console_format({"extra": {}})
