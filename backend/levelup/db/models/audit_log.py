"""AuditLog model: append-only record of account-level billing events."""

import uuid

from sqlalchemy import Column, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID

from levelup.db.base import Base
from levelup.db.types import JSONDocument, UTCDateTime, utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("user_profiles.id"), nullable=True, index=True)
    action = Column(String(100), nullable=False)
    resource_type = Column(String(50), nullable=True)
    details = Column("metadata", JSONDocument, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
