"""
Audit log of inbound processor notifications.

One row per processor event id. Redelivery of the same event overwrites the
row and bumps delivery_count, so duplicates deduplicate naturally while the
log still shows how often an event arrived.
"""
from typing import Any, Optional
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, JSON, Text
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationOutcome:
    OK = "ok"
    IGNORED = "ignored"
    WARNING = "warning"  # correlation problem; nothing to retry
    ERROR = "error"  # processing failed; replay from this log once fixed


class NotificationLogEntry(SQLModel, table=True):
    __tablename__ = "notification_log"

    id: Optional[int] = Field(default=None, primary_key=True)

    processor_event_id: str = Field(unique=True, index=True)  # evt_... or unverified:...
    event_type: str = Field(index=True)  # e.g. "checkout.session.completed"

    verified: bool = Field(default=False)
    verified_by: Optional[str] = Field(default=None, nullable=True)  # name of the matching secret

    outcome: str = Field(index=True)
    message: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    raw_payload: Optional[Any] = Field(default=None, sa_column=Column(JSON, nullable=True))

    delivery_count: int = Field(default=1)
    first_received_at: datetime = Field(
        default_factory=_utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    last_received_at: datetime = Field(
        default_factory=_utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
