"""
Tests for logging_setup module.

Verifies:
- JSON structured logging format
- Component and severity tagging
- Correlation id binding
- PII-aware logging helpers
- Log level configuration
"""
import json
import logging
from io import StringIO
from datetime import datetime

import pytest

from logging_setup import (
    setup_logging,
    get_logger,
    Component,
    JSONFormatter,
)


@pytest.fixture
def capture_logs():
    """Capture log output to a string buffer."""
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JSONFormatter())

    logger = logging.getLogger()
    logger.handlers = []
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield buffer

    logger.handlers = []


def test_json_formatter_basic(capture_logs):
    """Test basic JSON log formatting."""
    logger = get_logger(Component.AI_CLIENT)
    logger.info("Test message", extra_field="value")

    output = capture_logs.getvalue()
    log_entry = json.loads(output.strip())

    assert log_entry["severity"] == "info"
    assert log_entry["component"] == "ai_client"
    assert log_entry["message"] == "Test message"
    assert log_entry["extra_field"] == "value"
    assert "timestamp" in log_entry


def test_json_formatter_timestamp_format(capture_logs):
    """Test that timestamp is in ISO8601 format."""
    logger = get_logger(Component.RECOGNITION)
    logger.info("Timestamp test")

    log_entry = json.loads(capture_logs.getvalue().strip())

    dt = datetime.fromisoformat(log_entry["timestamp"].replace("Z", "+00:00"))
    assert dt is not None


def test_correlation_id_included_when_provided(capture_logs):
    logger = get_logger(Component.ASSISTANT, correlation_id="cmd_123")
    logger.info("Command test")

    log_entry = json.loads(capture_logs.getvalue().strip())

    assert log_entry["correlation_id"] == "cmd_123"


def test_correlation_id_absent_when_not_provided(capture_logs):
    logger = get_logger(Component.CONNECTIVITY)
    logger.info("No command")

    log_entry = json.loads(capture_logs.getvalue().strip())

    assert "correlation_id" not in log_entry


def test_with_correlation_creates_new_logger(capture_logs):
    base_logger = get_logger(Component.AI_CLIENT)
    command_logger = base_logger.with_correlation("cmd_456")

    command_logger.info("With correlation")

    log_entry = json.loads(capture_logs.getvalue().strip())

    assert log_entry["correlation_id"] == "cmd_456"
    assert base_logger.correlation_id is None


def test_pii_logging(capture_logs):
    """Utterances go into a separate pii field."""
    logger = get_logger(Component.ASSISTANT, correlation_id="cmd_789")
    logger.info_pii("Command received", utterance="montre-moi les produits")

    log_entry = json.loads(capture_logs.getvalue().strip())

    assert log_entry["pii"]["utterance"] == "montre-moi les produits"
    assert log_entry["message"] == "Command received"


def test_non_ascii_is_kept_readable(capture_logs):
    logger = get_logger(Component.CONNECTIVITY)
    logger.info("Connexion Internet rétablie")

    assert "rétablie" in capture_logs.getvalue()


def test_severity_levels(capture_logs):
    """Test all severity levels."""
    logger = get_logger(Component.RECOGNITION)

    logger.debug("Debug message")
    logger.info("Info message")
    logger.warning("Warning message")
    logger.error("Error message")
    logger.critical("Critical message")

    lines = [line for line in capture_logs.getvalue().strip().split("\n") if line]

    assert len(lines) == 5

    severities = [json.loads(line)["severity"] for line in lines]
    assert severities == ["debug", "info", "warning", "error", "critical"]


def test_component_enum():
    assert Component.CONNECTIVITY.value == "connectivity"
    assert Component.RECOGNITION.value == "recognition"
    assert Component.AI_CLIENT.value == "ai_client"
    assert Component.DECODER.value == "decoder"
    assert Component.ASSISTANT.value == "assistant"
    assert Component.API.value == "api"


def test_component_string_fallback(capture_logs):
    """Test that component can be a plain string."""
    logger = get_logger("custom_component")
    logger.info("Test")

    log_entry = json.loads(capture_logs.getvalue().strip())

    assert log_entry["component"] == "custom_component"


def test_multiple_extra_fields(capture_logs):
    logger = get_logger(Component.AI_CLIENT)
    logger.info(
        "Complex log",
        field1="value1",
        field2=123,
        field3=True,
        field4={"nested": "object"}
    )

    log_entry = json.loads(capture_logs.getvalue().strip())

    assert log_entry["field1"] == "value1"
    assert log_entry["field2"] == 123
    assert log_entry["field3"] is True
    assert log_entry["field4"] == {"nested": "object"}


def test_setup_logging_json():
    setup_logging(level="DEBUG", use_json=True)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG
    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)


def test_setup_logging_text():
    setup_logging(level="INFO", use_json=False)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.INFO
    assert len(root_logger.handlers) == 1
    assert not isinstance(root_logger.handlers[0].formatter, JSONFormatter)


def test_exception_logging(capture_logs):
    logger = get_logger(Component.ASSISTANT)

    try:
        raise ValueError("Test exception")
    except ValueError:
        logger.exception("Exception occurred")

    log_entry = json.loads(capture_logs.getvalue().strip())

    assert log_entry["severity"] == "error"
    assert "ValueError: Test exception" in log_entry["exception"]


def test_debug_pii_method(capture_logs):
    logger = get_logger(Component.RECOGNITION)
    logger.debug_pii("Final transcript received", utterance="aide-moi")

    log_entry = json.loads(capture_logs.getvalue().strip())

    assert log_entry["severity"] == "debug"
    assert log_entry["pii"]["utterance"] == "aide-moi"
