"""Purchase model: one completed Stripe checkout."""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID

from levelup.db.base import Base
from levelup.db.types import JSONDocument, UTCDateTime, utcnow


class Purchase(Base):
    __tablename__ = "purchases"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("user_profiles.id"), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    producer_id = Column(UUID(as_uuid=True), ForeignKey("user_profiles.id"), nullable=False)

    # Stripe references; both unique so a checkout can only ever produce one row
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True)
    stripe_checkout_session_id = Column(String(255), unique=True, nullable=True)

    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String(10), nullable=False, default="eur")
    status = Column(String(20), nullable=False, default="pending")  # pending, completed, failed, refunded

    license_type = Column(String(100), nullable=True, default="standard")
    license_id = Column(UUID(as_uuid=True), ForeignKey("licenses.id"), nullable=True, index=True)
    is_exclusive = Column(Boolean, nullable=False, default=False)
    license_snapshot = Column("metadata", JSONDocument, nullable=False, default=dict)

    download_count = Column(Integer, nullable=False, default=0)
    max_downloads = Column(Integer, nullable=False, default=5)
    download_expires_at = Column(UTCDateTime, nullable=True)

    # Contract delivery
    contract_pdf_path = Column(Text, nullable=True)
    # NULL = never attempted, year >= 2100 = send lease held, otherwise = sent at
    contract_email_sent_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)
