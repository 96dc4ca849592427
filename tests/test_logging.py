"""
Unit tests for structured logging setup.
"""
import logging

import pytest
import structlog
from pythonjsonlogger import jsonlogger

from paybridge.monitoring.logging import (
    app_context,
    bind_request_context,
    clear_request_context,
    mask_sensitive_fields,
    setup_logging,
)


@pytest.mark.unit
def test_app_context_uses_injected_settings(test_settings) -> None:
    add_app_context = app_context(test_settings)

    event = add_app_context(None, "info", {"event": "payment_initiated"})

    assert event["app_name"] == "paybridge-test"
    assert event["app_env"] == "test"


@pytest.mark.unit
def test_sensitive_fields_are_masked() -> None:
    event = mask_sensitive_fields(
        None,
        "info",
        {
            "event": "provider_initiate_started",
            "phone_number": "+254 712 345 678",
            "api_secret": "s3cr3t",
            "signature": "abcdef",
            "transaction_id": "txn_1",
            "reference_id": None,
        },
    )

    assert event["phone_number"] == "***678"
    assert event["api_secret"] == "***"
    assert event["signature"] == "***"
    assert event["transaction_id"] == "txn_1"
    assert event["reference_id"] is None


@pytest.mark.unit
def test_request_context_is_bound_and_cleared() -> None:
    bind_request_context("req-1", operation="webhook")
    assert structlog.contextvars.get_contextvars() == {"request_id": "req-1", "operation": "webhook"}

    bind_request_context("req-2")
    assert structlog.contextvars.get_contextvars() == {"request_id": "req-2"}

    clear_request_context()
    assert structlog.contextvars.get_contextvars() == {}


@pytest.mark.unit
def test_setup_logging_installs_json_handler(test_settings) -> None:
    setup_logging(test_settings)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG
    assert any(isinstance(h.formatter, jsonlogger.JsonFormatter) for h in root_logger.handlers)
    assert logging.getLogger("httpx").level == logging.WARNING
