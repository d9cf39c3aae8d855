from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from coursepay.core.config import Settings, settings as app_settings
from coursepay.core.context import set_subject_id
from coursepay.core.errors import AuthenticationError
from coursepay.core.jwt import SubjectIdentity, decode_subject_token
from coursepay.db import get_session
from coursepay.services.cancellation import CancellationService
from coursepay.services.catalog import CatalogService
from coursepay.services.checkout import CheckoutService
from coursepay.services.event_log import EventLog
from coursepay.services.notifications import NotificationProcessor
from coursepay.services.restoration import RestorationService
from coursepay.services.store import EntitlementStore
from coursepay.services.stripe_gateway import PaymentGateway, get_stripe_gateway

bearer_scheme = HTTPBearer(auto_error=False)


def get_settings() -> Settings:
    return app_settings


def get_gateway(settings: Settings = Depends(get_settings)) -> PaymentGateway:
    return get_stripe_gateway(settings)


def get_current_subject(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> SubjectIdentity:
    """
    Get the calling subject from the bearer token.
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        subject = decode_subject_token(settings, credentials.credentials)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )

    set_subject_id(subject.subject_id)
    return subject


def get_current_admin(
    subject: SubjectIdentity = Depends(get_current_subject),
    settings: Settings = Depends(get_settings),
) -> SubjectIdentity:
    """
    Get current subject and verify they are listed in ADMIN_SUBJECT_IDS.
    """
    if subject.subject_id not in settings.admin_subject_ids:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions",
        )
    return subject


def get_store(session: Session = Depends(get_session)) -> EntitlementStore:
    return EntitlementStore(session)


def get_event_log(session: Session = Depends(get_session)) -> EventLog:
    return EventLog(session)


def get_catalog(
    settings: Settings = Depends(get_settings),
    session: Session = Depends(get_session),
) -> CatalogService:
    return CatalogService(settings, session)


def get_checkout_service(
    settings: Settings = Depends(get_settings),
    store: EntitlementStore = Depends(get_store),
    catalog: CatalogService = Depends(get_catalog),
    gateway: PaymentGateway = Depends(get_gateway),
) -> CheckoutService:
    return CheckoutService(settings, store, catalog, gateway)


def get_notification_processor(
    settings: Settings = Depends(get_settings),
    store: EntitlementStore = Depends(get_store),
    event_log: EventLog = Depends(get_event_log),
    gateway: PaymentGateway = Depends(get_gateway),
) -> NotificationProcessor:
    return NotificationProcessor(settings, store, event_log, gateway)


def get_restoration_service(
    settings: Settings = Depends(get_settings),
    store: EntitlementStore = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
) -> RestorationService:
    return RestorationService(settings, store, gateway)


def get_cancellation_service(
    settings: Settings = Depends(get_settings),
    store: EntitlementStore = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
) -> CancellationService:
    return CancellationService(settings, store, gateway)
