"""
Structured logging configuration using structlog.

JSON lines in deployed environments, console rendering in development. Every
line carries the request_id/subject_id/event_id bound in core.context.

Usage:
    configure_logging(json_output=settings.LOG_JSON)  # once, at process start

    logger = structlog.get_logger(__name__)
    logger.info("Notification recorded", event_id="evt_123", outcome="ok")

Output with JSON enabled:
    {"event": "Notification recorded", "event_id": "evt_123", "outcome": "ok",
     "request_id": "req_...", "timestamp": "2024-01-01T12:00:00Z", "level": "info"}
"""

import logging
import os
import sys
from typing import Any, MutableMapping

import structlog

IS_DEPLOYED = os.getenv("ENVIRONMENT", "development") in ("production", "staging")
IS_TEST = "pytest" in sys.modules

# Log keys whose values must never reach the log sink
REDACTED_KEYS = frozenset({
    "authorization",
    "signature",
    "stripe_signature",
    "secret",
    "webhook_secret",
    "api_key",
    "token",
})


def redact_secrets(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Mask signing material and credentials passed as log fields."""
    for key in event_dict:
        if key.lower() in REDACTED_KEYS and event_dict[key]:
            event_dict[key] = "[redacted]"
    return event_dict


def configure_logging(json_output: bool | None = None, level: int = logging.INFO) -> None:
    if json_output is None:
        json_output = IS_DEPLOYED

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=not IS_TEST))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=not IS_TEST,
    )

    # Stripe, uvicorn and SQLAlchemy log through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for noisy in ("stripe", "urllib3", "httpx", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
