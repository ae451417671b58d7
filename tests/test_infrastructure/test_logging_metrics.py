"""
Test infrastructure components: logging, metrics, retry.

These tests verify the production hardening infrastructure works correctly.
"""

import sqlite3

import pytest

from delivery_rotation.kernel.errors import (
    ProviderNotContacted,
    StreamVersionConflict,
    ValidationError,
)
from delivery_rotation.kernel.logging import (
    LogOperation,
    configure_logging,
    get_correlation_id,
    get_logger,
    redact_context,
    set_correlation_id,
)
from delivery_rotation.kernel.metrics import (
    conflicting_responses_total,
    coordinates_defaulted_total,
    driver_contact_requests_total,
    events_appended_total,
    provider_responses_total,
)
from delivery_rotation.kernel.retry import retry_on_sqlite_lock, retry_on_version_conflict
from delivery_rotation.service import DeliveryRotation
from tests.helpers import BUILDER_ID, create_request, register_nearby_providers


class TestLoggingFramework:
    """Test structured logging framework."""

    def test_configure_logging_console(self) -> None:
        """Test logging configuration for console output."""
        configure_logging(json_output=False, log_level="INFO")
        logger = get_logger(__name__)
        assert logger is not None

    def test_configure_logging_json(self) -> None:
        """Test logging configuration for JSON output."""
        configure_logging(json_output=True, log_level="DEBUG")
        logger = get_logger(__name__)
        assert logger is not None

    def test_correlation_id(self) -> None:
        """Test correlation ID context management."""
        cid = get_correlation_id()
        assert cid is not None
        assert len(cid) > 0

        custom_id = "test-correlation-123"
        set_correlation_id(custom_id)
        assert get_correlation_id() == custom_id

    def test_log_operation_context_manager(self) -> None:
        """Test LogOperation context manager."""
        configure_logging(json_output=False, log_level="INFO")
        logger = get_logger(__name__)

        with LogOperation(logger, "test_operation", request_id="req_1", phone="+254700000001"):
            pass

    def test_log_operation_with_exception(self) -> None:
        """Test LogOperation re-raises after logging the failure."""
        configure_logging(json_output=False, log_level="INFO")
        logger = get_logger(__name__)

        with pytest.raises(ValueError):
            with LogOperation(logger, "failing_operation"):
                raise ValueError("Test error")


class TestRedaction:
    """Contact details never reach a log line"""

    def test_contact_fields_are_redacted(self) -> None:
        redacted = redact_context(
            {
                "request_id": "req_1",
                "phone": "+254700000001",
                "driver_contact": "+254700000002",
                "email": "site@example.co.ke",
            }
        )

        assert redacted["request_id"] == "req_1"
        assert redacted["phone"] == "***REDACTED***"
        assert redacted["driver_contact"] == "***REDACTED***"
        assert redacted["email"] == "***REDACTED***"

    def test_original_context_is_untouched(self) -> None:
        context = {"phone": "+254700000001"}
        redact_context(context)
        assert context["phone"] == "+254700000001"


class TestRetry:
    """Retry decorators built on tenacity"""

    def test_version_conflict_is_retried(self) -> None:
        calls = []

        @retry_on_version_conflict(min_wait_ms=1, max_wait_ms=1)
        def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise StreamVersionConflict("req_1", 3, 4)
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_version_conflict_gives_up(self) -> None:
        @retry_on_version_conflict(max_attempts=2, min_wait_ms=1, max_wait_ms=1)
        def always_conflicts() -> None:
            raise StreamVersionConflict("req_1", 3, 4)

        with pytest.raises(StreamVersionConflict):
            always_conflicts()

    def test_other_errors_are_not_retried(self) -> None:
        calls = []

        @retry_on_version_conflict(min_wait_ms=1, max_wait_ms=1)
        def invalid() -> None:
            calls.append(1)
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            invalid()
        assert len(calls) == 1

    def test_sqlite_lock_is_retried(self) -> None:
        calls = []

        @retry_on_sqlite_lock(min_wait_ms=1, max_wait_ms=1)
        def locked_once() -> str:
            calls.append(1)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return "written"

        assert locked_once() == "written"
        assert len(calls) == 2


class TestMetrics:
    """Test Prometheus metrics collection."""

    def setup_method(self) -> None:
        configure_logging(json_output=False, log_level="INFO")

    def test_events_appended_metric(self, rotation: DeliveryRotation) -> None:
        before = events_appended_total.labels(
            stream_type="DeliveryRequest", event_type="ProviderContacted"
        )._value.get()

        register_nearby_providers(rotation, 1)
        create_request(rotation)

        after = events_appended_total.labels(
            stream_type="DeliveryRequest", event_type="ProviderContacted"
        )._value.get()
        assert after == before + 1

    def test_response_and_conflict_metrics(self, rotation: DeliveryRotation) -> None:
        rejects_before = provider_responses_total.labels(action="reject")._value.get()
        conflicts_before = conflicting_responses_total.labels(
            reason="ProviderNotContacted"
        )._value.get()

        register_nearby_providers(rotation, 2)
        request = create_request(rotation)
        rotation.submit_provider_response(request.request_id, "p1", "reject")
        with pytest.raises(ProviderNotContacted):
            rotation.submit_provider_response(request.request_id, "p1", "reject")

        assert provider_responses_total.labels(action="reject")._value.get() == rejects_before + 1
        assert (
            conflicting_responses_total.labels(reason="ProviderNotContacted")._value.get()
            == conflicts_before + 1
        )

    def test_coordinates_defaulted_metric(self, rotation: DeliveryRotation) -> None:
        before = coordinates_defaulted_total._value.get()

        create_request(rotation, pickup={"address": "Unmapped yard"})

        assert coordinates_defaulted_total._value.get() == before + 1

    def test_driver_contact_metric(self, rotation: DeliveryRotation) -> None:
        before = driver_contact_requests_total.labels(authorized="false")._value.get()

        register_nearby_providers(rotation, 1)
        request = create_request(rotation)
        rotation.can_disclose_driver_contact(request.request_id, BUILDER_ID, "builder", "Site gate")

        assert driver_contact_requests_total.labels(authorized="false")._value.get() == before + 1
