"""
Error taxonomy and error reporting.

Every failure a caller can see is a CoursePayError subclass carrying the HTTP
status it maps to; the API layer renders them as {"detail": message}.

Reporting:
- capture_exception() always logs through structlog with request context,
  and forwards to Sentry when init_sentry() was called with a DSN.

Usage:
    raise NotFoundError("No active subscription found for this course")

    capture_exception(exc, context={"event_id": "evt_123"})
"""

from typing import Optional, Any, Dict
from datetime import datetime, timezone
import structlog

from coursepay.core.context import get_request_id, get_subject_id, get_context_dict

logger = structlog.get_logger(__name__)

__all__ = [
    "CoursePayError",
    "ConfigurationError",
    "AuthenticationError",
    "WebhookAuthenticityError",
    "ForbiddenError",
    "BadRequestError",
    "NotFoundError",
    "ConflictError",
    "PriceNotConfiguredError",
    "ProcessorError",
    "init_sentry",
    "capture_exception",
    "is_sentry_enabled",
]


class CoursePayError(Exception):
    """Base class for errors surfaced to callers."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(CoursePayError):
    """A required setting is missing. Deployment problem, never transient."""

    status_code = 500


class AuthenticationError(CoursePayError):
    status_code = 401


class WebhookAuthenticityError(CoursePayError):
    """Webhook body could not be verified against any signing secret."""

    status_code = 400


class ForbiddenError(CoursePayError):
    status_code = 403


class BadRequestError(CoursePayError):
    status_code = 400


class NotFoundError(CoursePayError):
    status_code = 404


class ConflictError(CoursePayError):
    status_code = 409


class PriceNotConfiguredError(ConflictError):
    """The course has no usable price and the fallback price is disabled."""


class ProcessorError(CoursePayError):
    """The payment processor rejected or failed a request."""

    status_code = 502


_sentry_initialized: bool = False


def init_sentry(dsn: str, environment: str = "production", traces_sample_rate: float = 0.0) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
            ],
            # Raw webhook payloads carry customer data
            send_default_pii=False,
            before_send=_before_send,
        )
    except ImportError:
        logger.warning("Sentry SDK not installed, error tracking disabled")
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Tag events with the request and subject they belong to."""
    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id

    subject_id = get_subject_id()
    if subject_id:
        event.setdefault("user", {})["id"] = subject_id

    return event


def is_sentry_enabled() -> bool:
    return _sentry_initialized


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
) -> Optional[str]:
    """
    Capture an exception with Sentry and structured logging.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"event_id": "evt_123"})
        level: Severity level (warning, error, fatal)
        fingerprint: Custom grouping fingerprint for Sentry

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    logger.error("Exception captured", exc_info=exc, **enriched_context)

    if not _sentry_initialized:
        return None

    import sentry_sdk

    with sentry_sdk.new_scope() as scope:
        for key, value in enriched_context.items():
            if value is not None:
                scope.set_extra(key, value)
        if fingerprint:
            scope.fingerprint = fingerprint
        scope.level = level
        return sentry_sdk.capture_exception(exc)
