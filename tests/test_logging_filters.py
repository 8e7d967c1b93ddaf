"""Tests for sensitive data filtering in logs."""

from __future__ import annotations

import json
import logging
from io import StringIO

from admission.core.logging import (
    JsonFormatter,
    RequestIdFilter,
    SensitiveDataFilter,
    clear_request_id,
    redact,
    set_request_id,
)


def _capture(name: str) -> tuple[logging.Logger, StringIO]:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger, stream


def test_sensitive_filter_redacts_credentials():
    """Ensure bearer tokens and cookies never reach the sink."""

    logger, stream = _capture("test_redaction")

    logger.info(
        "test_event",
        extra={
            "authorization": "Bearer eyJhbGciOi.secret",
            "cookie": "token=session-secret",
            "safe_field": "visible",
        },
    )

    output = stream.getvalue()

    assert "eyJhbGciOi.secret" not in output
    assert "session-secret" not in output
    assert "[REDACTED]" in output
    assert "visible" in output


def test_sensitive_filter_redacts_settings_values():
    """Ensure secrets from configuration are masked."""

    logger, stream = _capture("test_settings_redaction")

    logger.info(
        "admission.started",
        extra={
            "jwt_secret": "super-secret",
            "redis_url": "redis://:hunter2@cache:6379/0",
            "store_backend": "redis",
        },
    )

    output = stream.getvalue()

    assert "super-secret" not in output
    assert "hunter2" not in output
    assert "store_backend" in output


def test_sensitive_filter_allows_admission_fields():
    """Verify rate limit event fields pass through unmodified."""

    logger, stream = _capture("test_safe_fields")

    logger.warning(
        "rate_limit.exceeded",
        extra={
            "policy": "auth",
            "key": "auth:ip:203.0.113.5",
            "count": 6,
            "limit": 5,
            "retry_after_s": 840,
        },
    )

    payload = json.loads(stream.getvalue())

    assert payload["message"] == "rate_limit.exceeded"
    assert payload["level"] == "warning"
    assert payload["key"] == "auth:ip:203.0.113.5"
    assert payload["retry_after_s"] == 840
    assert "[REDACTED]" not in stream.getvalue()


def test_sensitive_filter_redacts_nested_dicts():
    """Ensure nested sensitive fields are redacted."""

    logger, stream = _capture("test_nested")

    logger.info(
        "nested_event",
        extra={
            "headers": {
                "Authorization": "Bearer secret-key",
                "user-agent": "pytest",
            },
        },
    )

    output = stream.getvalue()

    assert "secret-key" not in output
    assert "[REDACTED]" in output
    assert "pytest" in output


def test_request_id_is_attached_from_context():
    logger, stream = _capture("test_request_id")

    set_request_id("req-123")
    try:
        logger.info("with_request_id")
    finally:
        clear_request_id()

    assert json.loads(stream.getvalue())["request_id"] == "req-123"


def test_redact_preserves_sequences():
    value = redact({"items": [{"token": "t"}, {"name": "n"}]})

    assert value == {"items": [{"token": "[REDACTED]"}, {"name": "n"}]}
