"""StripeEvent model: idempotency ledger and processing lease for webhook deliveries."""

from sqlalchemy import Boolean, Column, String, Text

from levelup.db.base import Base
from levelup.db.types import JSONDocument, UTCDateTime, utcnow


class StripeEvent(Base):
    """One row per Stripe event id.

    ``processing_started_at`` is the lease: non-null while a worker holds the
    event. ``processed`` flips to true exactly once and clears the lease.
    """

    __tablename__ = "stripe_events"

    id = Column(String(255), primary_key=True)  # Stripe event id (evt_...)
    type = Column(String(255), nullable=False)
    data = Column(JSONDocument, nullable=False, default=dict)

    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(UTCDateTime, nullable=True)
    processing_started_at = Column(UTCDateTime, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
