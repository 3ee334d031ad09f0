import logging

import pytest
from pythonjsonlogger.json import JsonFormatter

from questiongen.core.config import get_settings
from questiongen.core.logging import (
    StructuredLogger,
    correlation_scope,
    get_correlation_id,
    set_correlation_id,
    setup_logging,
)
from questiongen.core.security_config import is_sensitive_key


def test_structured_logger_redacts_sensitive_keys():
    logger = StructuredLogger("tests")

    # allowlist: placeholder values, not real secrets
    data = {
        "api_key": "placeholder_key",  # pragma: allowlist secret
        "Authorization": "Bearer placeholder_token",
        "provider": "anthropic",
    }
    sanitized = logger._sanitize_data(data)

    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["Authorization"] == "[REDACTED]"
    assert sanitized["provider"] == "anthropic"


def test_structured_logger_redacts_nested_values():
    logger = StructuredLogger("tests")
    data = {"request": {"headers": {"x-api-key": "placeholder"}, "attempt": 2}}

    sanitized = logger._sanitize_data(data)

    assert sanitized["request"]["headers"]["x-api-key"] == "[REDACTED]"
    assert sanitized["request"]["attempt"] == 2


@pytest.mark.parametrize(
    "key,expected",
    [
        ("ANTHROPIC_API_KEY", True),
        ("refresh_token", True),
        ("provider", False),
        ("attempt", False),
        ("request_id", False),
        ("skipped_providers", False),
    ],
)
def test_is_sensitive_key(key, expected):
    assert is_sensitive_key(key) is expected


def test_correlation_scope_restores_previous_id():
    set_correlation_id("outer")
    with correlation_scope("req-123"):
        assert get_correlation_id() == "req-123"
    assert get_correlation_id() == "outer"


def test_log_line_includes_correlation_id(caplog):
    logger = StructuredLogger("tests.correlation")
    with caplog.at_level(logging.INFO, logger="tests.correlation"):
        with correlation_scope("req-abc"):
            logger.info("Provider attempt finished", provider="gemini", attempt=1)

    record = caplog.records[-1]
    assert "[req-abc]" in record.getMessage()
    assert "provider=gemini" in record.getMessage()
    assert record.structured_data["correlation_id"] == "req-abc"


@pytest.mark.parametrize(
    "environment,formatter_type",
    [("test", logging.Formatter), ("production", JsonFormatter)],
)
def test_setup_logging_is_idempotent(monkeypatch, environment, formatter_type):
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)
    monkeypatch.setenv("ENVIRONMENT", environment)
    get_settings.cache_clear()

    setup_logging()
    setup_logging()

    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, formatter_type)
    assert root.level == logging.INFO
