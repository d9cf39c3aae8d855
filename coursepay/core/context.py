"""
Request context management for log correlation.

Provides request_id, subject_id and event_id across logs and error reports.
Uses contextvars for async-safe context propagation; values are also bound
into structlog's contextvars so every log line carries them.

Usage:
    # In middleware (automatic)
    set_request_id(generate_request_id())

    # After the caller is authenticated
    set_subject_id(subject.subject_id)

    # While a webhook event is being dispatched
    set_event_id(event.event_id)
"""

from contextvars import ContextVar
from typing import Optional
import uuid

import structlog

__all__ = [
    "set_request_id",
    "get_request_id",
    "generate_request_id",
    "set_subject_id",
    "get_subject_id",
    "set_event_id",
    "get_event_id",
    "clear_context",
    "get_context_dict",
]

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_subject_id: ContextVar[Optional[str]] = ContextVar("subject_id", default=None)
_event_id: ContextVar[Optional[str]] = ContextVar("event_id", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)
    structlog.contextvars.bind_contextvars(request_id=request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_subject_id(subject_id: str) -> None:
    """Set the authenticated subject for the current context."""
    _subject_id.set(subject_id)
    structlog.contextvars.bind_contextvars(subject_id=subject_id)


def get_subject_id() -> Optional[str]:
    return _subject_id.get()


def set_event_id(event_id: Optional[str]) -> None:
    """Set the processor event being handled in the current context."""
    _event_id.set(event_id)
    if event_id:
        structlog.contextvars.bind_contextvars(event_id=event_id)
    else:
        structlog.contextvars.unbind_contextvars("event_id")


def get_event_id() -> Optional[str]:
    return _event_id.get()


def clear_context() -> None:
    """
    Clear all context variables.

    Called at end of request to prevent context leaking.
    """
    _request_id.set(None)
    _subject_id.set(None)
    _event_id.set(None)
    structlog.contextvars.clear_contextvars()


def get_context_dict() -> dict:
    return {
        "request_id": get_request_id(),
        "subject_id": get_subject_id(),
        "event_id": get_event_id(),
    }
