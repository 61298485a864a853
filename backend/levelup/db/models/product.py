"""Product model: a beat listed by a producer."""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID

from levelup.db.base import Base
from levelup.db.types import UTCDateTime, utcnow


class Product(Base):
    __tablename__ = "products"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    producer_id = Column(UUID(as_uuid=True), ForeignKey("user_profiles.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=True, unique=True)

    price = Column(Integer, nullable=True)  # listing price in cents, display only
    is_exclusive = Column(Boolean, nullable=False, default=False)
    is_published = Column(Boolean, nullable=False, default=False)

    # Exclusive inventory state
    is_sold = Column(Boolean, nullable=False, default=False)
    sold_at = Column(UTCDateTime, nullable=True)
    sold_to_user_id = Column(UUID(as_uuid=True), ForeignKey("user_profiles.id"), nullable=True)

    deleted_at = Column(UTCDateTime, nullable=True)  # soft delete
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
