"""ProducerSubscription model: local mirror of a producer's Stripe subscription."""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID

from levelup.db.base import Base
from levelup.db.types import UTCDateTime, utcnow


class ProducerSubscription(Base):
    __tablename__ = "producer_subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("user_profiles.id"), nullable=False, unique=True)
    stripe_customer_id = Column(String(255), nullable=False)
    stripe_subscription_id = Column(String(255), nullable=False, unique=True)
    subscription_status = Column(String(30), nullable=False)
    current_period_end = Column(UTCDateTime, nullable=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    # Always recomputed from status and current_period_end on write
    is_producer_active = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
