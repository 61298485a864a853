"""ExclusiveLock model: checkout reservation on a one-of-a-kind product."""

import uuid

from sqlalchemy import Column, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID

from levelup.db.base import Base
from levelup.db.types import UTCDateTime, utcnow


class ExclusiveLock(Base):
    __tablename__ = "exclusive_locks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, unique=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("user_profiles.id"), nullable=False)
    # "pending_<ms>" until the Stripe session exists, then the real cs_... id
    stripe_checkout_session_id = Column(String(255), nullable=False)
    locked_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
