"""UserProfile model: marketplace account, buyer and producer alike."""

import uuid

from sqlalchemy import Boolean, Column, Integer, String
from sqlalchemy.dialects.postgresql import UUID

from levelup.db.base import Base
from levelup.db.types import UTCDateTime, utcnow


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)  # auth user id
    email = Column(String(255), nullable=False)
    username = Column(String(100), nullable=True, unique=True)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="user")  # user, confirmed_user, producer, admin

    # Stripe
    stripe_customer_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True)
    is_producer_active = Column(Boolean, nullable=False, default=False)

    total_purchases = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
