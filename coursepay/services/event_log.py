"""
Event Log: audit trail of every inbound processor notification.
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlmodel import Session, select

from coursepay.core.db_utils import db_retry, upsert
from coursepay.models import NotificationLogEntry, NotificationOutcome

logger = structlog.get_logger(__name__)

UNVERIFIED_PREFIX = "unverified:"
MALFORMED_PREFIX = "malformed:"
MAX_EVENT_ID_LENGTH = 255
# Rejected bodies may be attacker-controlled; keep only a prefix
MAX_REJECTED_BODY_CHARS = 4096


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def rejected_event_id(body: str, prefix: str = UNVERIFIED_PREFIX) -> tuple[str, str]:
    """
    Log key and claimed type for a body that was rejected before processing.

    The key is namespaced so a rejected request can never overwrite the entry
    of a genuine event with the same id.
    """
    claimed_id = None
    claimed_type = "unknown"
    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        if parsed.get("id"):
            claimed_id = str(parsed["id"])
        if parsed.get("type"):
            claimed_type = str(parsed["type"])[:MAX_EVENT_ID_LENGTH]

    if not claimed_id:
        claimed_id = hashlib.sha256(body.encode("utf-8")).hexdigest()

    return (prefix + claimed_id)[:MAX_EVENT_ID_LENGTH], claimed_type


class EventLog:
    def __init__(self, session: Session):
        self.session = session

    @db_retry()
    def _upsert(self, values: dict[str, Any], count_delivery: bool) -> None:
        try:
            upsert(
                self.session,
                NotificationLogEntry,
                values,
                ["processor_event_id"],
                keep_on_conflict=["first_received_at", "delivery_count"],
                set_on_conflict=(
                    (lambda table, excluded: {"delivery_count": table.c.delivery_count + 1})
                    if count_delivery
                    else None
                ),
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def record(
        self,
        event_id: str,
        event_type: str,
        outcome: str,
        message: Optional[str] = None,
        raw_payload: Optional[Any] = None,
        verified_by: Optional[str] = None,
        count_delivery: bool = True,
    ) -> None:
        """
        Write the entry for ``event_id``, overwriting any previous outcome.

        ``count_delivery=False`` is used by replays, which re-run processing
        without a new delivery from the processor.
        """
        now = _utc_now()
        self._upsert(
            {
                "processor_event_id": event_id[:MAX_EVENT_ID_LENGTH],
                "event_type": event_type or "unknown",
                "verified": verified_by is not None,
                "verified_by": verified_by,
                "outcome": outcome,
                "message": message,
                "raw_payload": raw_payload,
                "delivery_count": 1,
                "first_received_at": now,
                "last_received_at": now,
            },
            count_delivery,
        )
        log = logger.warning if outcome in (NotificationOutcome.WARNING, NotificationOutcome.ERROR) else logger.info
        log(
            "Notification recorded",
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            verified_by=verified_by,
            detail=message,
        )

    def record_rejected(self, body: str, reason: str, verified_by: Optional[str] = None) -> str:
        """
        Log a request that was refused before processing. Returns its log key.

        Without ``verified_by`` the signature matched no configured secret;
        with it, the body was authentic but not an event we can read.
        """
        prefix = MALFORMED_PREFIX if verified_by else UNVERIFIED_PREFIX
        event_id, claimed_type = rejected_event_id(body, prefix)
        self.record(
            event_id,
            claimed_type,
            NotificationOutcome.ERROR,
            message=reason,
            raw_payload={
                "body": body[:MAX_REJECTED_BODY_CHARS],
                "truncated": len(body) > MAX_REJECTED_BODY_CHARS,
            },
            verified_by=verified_by,
        )
        return event_id

    def get(self, event_id: str) -> Optional[NotificationLogEntry]:
        return self.session.exec(
            select(NotificationLogEntry).where(NotificationLogEntry.processor_event_id == event_id)
        ).first()

    def list_entries(self, outcome: Optional[str] = None, limit: int = 100) -> list[NotificationLogEntry]:
        query = select(NotificationLogEntry)
        if outcome:
            query = query.where(NotificationLogEntry.outcome == outcome)
        query = query.order_by(NotificationLogEntry.last_received_at.desc()).limit(limit)
        return list(self.session.exec(query).all())
