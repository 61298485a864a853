"""Column types and statement helpers shared by the models and services.

Production runs on Postgres (asyncpg); the test suite runs on SQLite
(aiosqlite). Both support ``INSERT ... ON CONFLICT`` and ``UPDATE ...
RETURNING``, but through dialect-specific constructs.
"""

from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """timestamptz that always round-trips as an aware UTC datetime.

    SQLite has no timezone support, so values are normalised to naive UTC on
    the way in and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


def insert_for(session: AsyncSession):
    """Return the dialect ``insert`` construct that supports ON CONFLICT."""
    if session.bind.dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


# JSONB on Postgres, plain JSON elsewhere
JSONDocument = JSON().with_variant(postgresql.JSONB(), "postgresql")
