"""
Admin endpoints: price provisioning, payment audit and notification replay.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from coursepay.api.deps import (
    get_current_admin,
    get_event_log,
    get_gateway,
    get_notification_processor,
    get_settings,
    get_store,
)
from coursepay.core.config import Settings
from coursepay.core.jwt import SubjectIdentity
from coursepay.db import get_session
from coursepay.models import NotificationLogEntry
from coursepay.services.catalog import CatalogService
from coursepay.services.event_log import EventLog
from coursepay.services.notifications import NotificationProcessor
from coursepay.services.store import EntitlementStore
from coursepay.services.stripe_gateway import PaymentGateway

router = APIRouter(prefix="/admin", tags=["admin"])


def _log_entry(entry: NotificationLogEntry) -> dict:
    return {
        "event_id": entry.processor_event_id,
        "event_type": entry.event_type,
        "verified": entry.verified,
        "verified_by": entry.verified_by,
        "outcome": entry.outcome,
        "message": entry.message,
        "delivery_count": entry.delivery_count,
        "first_received_at": entry.first_received_at.isoformat(),
        "last_received_at": entry.last_received_at.isoformat(),
    }


@router.post("/courses/{course_id}/sync-price")
def sync_course_price(
    course_id: str,
    admin: SubjectIdentity = Depends(get_current_admin),
    settings: Settings = Depends(get_settings),
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Create the Stripe product and price for a course if missing and cache
    their ids on the course.
    """
    result = CatalogService(settings, session, gateway).sync_course_price(course_id)
    return {
        "course_id": result.course_id,
        "stripe_product_id": result.stripe_product_id,
        "stripe_price_id": result.stripe_price_id,
        "created": result.created,
    }


@router.get("/payments")
def list_payments(
    limit: int = Query(default=200, ge=1, le=1000),
    admin: SubjectIdentity = Depends(get_current_admin),
    store: EntitlementStore = Depends(get_store),
):
    return store.list_payments(limit=limit)


@router.get("/notifications")
def list_notifications(
    outcome: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    admin: SubjectIdentity = Depends(get_current_admin),
    event_log: EventLog = Depends(get_event_log),
):
    return [_log_entry(entry) for entry in event_log.list_entries(outcome=outcome, limit=limit)]


@router.post("/notifications/{event_id}/replay")
def replay_notification(
    event_id: str,
    admin: SubjectIdentity = Depends(get_current_admin),
    processor: NotificationProcessor = Depends(get_notification_processor),
):
    """
    Re-run a logged event through the webhook dispatcher, e.g. after fixing
    whatever made it fail.
    """
    result = processor.replay(event_id)
    return {"event_id": result.event_id, "outcome": result.outcome, "message": result.message}
