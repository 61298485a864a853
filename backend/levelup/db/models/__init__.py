"""Re-export all models so Base.metadata sees them."""

from levelup.db.models.audit_log import AuditLog
from levelup.db.models.entitlement import Entitlement
from levelup.db.models.exclusive_lock import ExclusiveLock
from levelup.db.models.license import License
from levelup.db.models.producer_subscription import ProducerSubscription
from levelup.db.models.product import Product
from levelup.db.models.purchase import Purchase
from levelup.db.models.stripe_event import StripeEvent
from levelup.db.models.user_profile import UserProfile

__all__ = [
    "AuditLog",
    "Entitlement",
    "ExclusiveLock",
    "License",
    "ProducerSubscription",
    "Product",
    "Purchase",
    "StripeEvent",
    "UserProfile",
]
