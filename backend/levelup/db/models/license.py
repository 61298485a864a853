"""License model: catalog of purchasable usage rights."""

import uuid

from sqlalchemy import Boolean, Column, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID

from levelup.db.base import Base
from levelup.db.types import UTCDateTime, utcnow


class License(Base):
    __tablename__ = "licenses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)

    # Capability limits (NULL = unlimited)
    max_streams = Column(Integer, nullable=True)
    max_sales = Column(Integer, nullable=True)
    youtube_monetization = Column(Boolean, nullable=False, default=False)
    music_video_allowed = Column(Boolean, nullable=False, default=False)
    credit_required = Column(Boolean, nullable=False, default=True)
    exclusive_allowed = Column(Boolean, nullable=False, default=False)

    price = Column(Integer, nullable=False)  # cents

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def snapshot(self) -> dict:
        """License terms frozen onto a purchase row."""
        return {
            "license_id": str(self.id),
            "license_name": self.name,
            "max_streams": self.max_streams,
            "max_sales": self.max_sales,
            "youtube_monetization": self.youtube_monetization,
            "music_video_allowed": self.music_video_allowed,
            "credit_required": self.credit_required,
            "exclusive_allowed": self.exclusive_allowed,
        }
