"""
Tests for structured JSON logging

Tests cover:
- Service fields and correlation ID on every stdlib record
- Idempotency key and operation bound for the duration of a block
- Nested blocks restore the outer values
"""

import json
import logging

import structlog

from app.services.monitoring.logging import (
    SERVICE_NAME,
    CorrelationJsonFormatter,
    add_correlation_id,
    idempotency_log_context,
)


def format_record(message="payment_created") -> dict:
    formatter = CorrelationJsonFormatter('%(levelname)s %(name)s %(message)s')
    record = logging.LogRecord("app.routers.payments", logging.INFO, __file__, 1, message, None, None)
    return json.loads(formatter.format(record))


class TestCorrelationJsonFormatter:
    """Tests for CorrelationJsonFormatter."""

    def test_service_fields(self):
        entry = format_record()

        assert entry["message"] == "payment_created"
        assert entry["service"] == SERVICE_NAME
        assert entry["correlation_id"] == "none"
        assert "idempotency_key" not in entry

    def test_bound_idempotency_context(self):
        with idempotency_log_context("pay-1", "POST /api/v1/payments"):
            entry = format_record()

        assert entry["idempotency_key"] == "pay-1"
        assert entry["operation"] == "POST /api/v1/payments"
        assert "idempotency_key" not in format_record()

    def test_job_type_is_included(self):
        with idempotency_log_context("capture:pay_42", "capture_payment", job_type="CapturePaymentJob"):
            entry = format_record()

        assert entry["job_type"] == "CapturePaymentJob"


class TestIdempotencyLogContext:
    """Tests for idempotency_log_context()."""

    def test_nested_blocks_restore_outer_values(self):
        with idempotency_log_context("outer", "POST /a"):
            with idempotency_log_context("inner", "POST /b"):
                assert structlog.contextvars.get_contextvars()["idempotency_key"] == "inner"
            assert structlog.contextvars.get_contextvars()["idempotency_key"] == "outer"

        assert "idempotency_key" not in structlog.contextvars.get_contextvars()

    def test_structlog_events_pick_up_bound_values(self):
        with idempotency_log_context("pay-1", "POST /api/v1/payments"):
            event = structlog.contextvars.merge_contextvars(None, "info", {"event": "idempotency_stored"})

        assert event["idempotency_key"] == "pay-1"
        assert event["operation"] == "POST /api/v1/payments"


def test_add_correlation_id_keeps_explicit_value():
    event = add_correlation_id(None, "info", {"event": "capture_payment_start", "correlation_id": "req-1"})

    assert event["correlation_id"] == "req-1"
