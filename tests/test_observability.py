"""
Tests for observability components.

Tests:
- Request context management
- Error capture with and without Sentry
- Error taxonomy status codes
- Request ID validation in the context middleware
"""

from unittest.mock import MagicMock, patch

import pytest
import structlog

from coursepay.core import errors
from coursepay.core.context import (
    clear_context,
    generate_request_id,
    get_context_dict,
    get_event_id,
    get_request_id,
    get_subject_id,
    set_event_id,
    set_request_id,
    set_subject_id,
)
from coursepay.core.errors import (
    AuthenticationError,
    ConfigurationError,
    CoursePayError,
    PriceNotConfiguredError,
    ProcessorError,
    WebhookAuthenticityError,
    capture_exception,
)
from coursepay.core.logging_config import configure_logging, redact_secrets
from coursepay.middleware.context import _validate_id


class TestRequestContext:
    """Tests for request context management."""

    def test_generate_request_id_format(self):
        """Test request ID format: req_{16 hex chars}."""
        request_id = generate_request_id()
        assert request_id.startswith("req_")
        assert len(request_id) == 20

    def test_context_round_trip(self):
        clear_context()
        set_request_id("req_test")
        set_subject_id("u1")
        set_event_id("evt_1")

        assert get_context_dict() == {"request_id": "req_test", "subject_id": "u1", "event_id": "evt_1"}
        assert structlog.contextvars.get_contextvars()["event_id"] == "evt_1"

        clear_context()
        assert get_request_id() is None
        assert get_subject_id() is None
        assert get_event_id() is None
        assert structlog.contextvars.get_contextvars() == {}

    def test_event_id_unbound(self):
        set_event_id("evt_1")
        set_event_id(None)

        assert "event_id" not in structlog.contextvars.get_contextvars()
        clear_context()


class TestErrors:
    @pytest.mark.parametrize("error_class, status_code", [
        (ConfigurationError, 500),
        (AuthenticationError, 401),
        (WebhookAuthenticityError, 400),
        (PriceNotConfiguredError, 409),
        (ProcessorError, 502),
    ])
    def test_status_codes(self, error_class, status_code):
        assert error_class("boom").status_code == status_code

    def test_status_code_override(self):
        error = CoursePayError("teapot", status_code=418)
        assert error.status_code == 418
        assert error.message == "teapot"

    def test_capture_without_sentry(self):
        """Logs only; returns no Sentry event id."""
        assert capture_exception(ValueError("test"), context={"event_id": "evt_1"}) is None

    def test_capture_with_sentry(self):
        fake_sentry = MagicMock()
        fake_sentry.capture_exception.return_value = "sentry-event-1"

        with patch.object(errors, "_sentry_initialized", True), \
                patch.dict("sys.modules", {"sentry_sdk": fake_sentry}):
            event_id = capture_exception(ValueError("test"), context={"event_id": "evt_1"})

        assert event_id == "sentry-event-1"
        fake_sentry.capture_exception.assert_called_once()

    def test_init_sentry_without_dsn(self):
        assert errors.init_sentry("") is False
        assert errors.is_sentry_enabled() is False


class TestRequestIdValidation:
    @pytest.mark.parametrize("value", ["req_abc123", "A-b_9"])
    def test_accepts_safe_ids(self, value):
        assert _validate_id(value) == value

    @pytest.mark.parametrize("value", [None, "", "x" * 65, "bad id", "inject\nline"])
    def test_rejects_unsafe_ids(self, value):
        assert _validate_id(value) is None

    def test_unsafe_header_replaced(self, client):
        response = client.get("/health", headers={"X-Request-ID": "bad id"})
        assert response.headers["X-Request-ID"].startswith("req_")


class TestLoggingConfig:
    def test_secrets_redacted(self):
        event = redact_secrets(None, "info", {"event": "x", "signature": "t=1,v1=abc", "event_id": "evt_1"})

        assert event["signature"] == "[redacted]"
        assert event["event_id"] == "evt_1"

    def test_empty_secret_left_alone(self):
        assert redact_secrets(None, "info", {"token": None})["token"] is None

    def test_json_output_configures(self):
        configure_logging(json_output=True)
        try:
            assert any(
                isinstance(p, structlog.processors.JSONRenderer)
                for p in structlog.get_config()["processors"]
            )
        finally:
            configure_logging(json_output=False)
