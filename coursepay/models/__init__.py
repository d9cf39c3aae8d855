from .course import Course
from .entitlement import Entitlement, EntitlementStatus, PaymentStatus
from .subscription_record import SubscriptionRecord, ENDED_SUBSCRIPTION_STATUSES
from .notification_log import NotificationLogEntry, NotificationOutcome

__all__ = [
    "Course",
    "Entitlement",
    "EntitlementStatus",
    "PaymentStatus",
    "SubscriptionRecord",
    "ENDED_SUBSCRIPTION_STATUSES",
    "NotificationLogEntry",
    "NotificationOutcome",
]
