"""Time-bounded processing lease stored on a row.

A lease is the ``processing_started_at`` column: a worker owns the row while
it is set and younger than the lease timeout. Claims are a single
``UPDATE ... WHERE ... RETURNING``, so two concurrent workers can never both
win, and a worker that crashed mid-flight is recovered once its claim goes
stale.
"""

from datetime import datetime, timedelta

import structlog
from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelup.core.config import get_settings
from levelup.db.base import get_session_factory
from levelup.db.types import utcnow

logger = structlog.get_logger(__name__)


def default_lease_timeout() -> timedelta:
    return timedelta(milliseconds=get_settings().stripe_event_processing_lock_timeout_ms)


class ProcessingLease:
    """Claim/release over any model with ``id``, ``processed``,
    ``processed_at``, ``processing_started_at`` and ``error`` columns."""

    def __init__(
        self,
        model,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lease_timeout: timedelta | None = None,
    ) -> None:
        self.model = model
        self._session_factory = session_factory or get_session_factory()
        self.lease_timeout = lease_timeout or default_lease_timeout()

    async def claim(
        self, key: str, lease_timeout: timedelta | None = None, now: datetime | None = None
    ) -> datetime | None:
        """Take the lease on ``key``.

        Returns the claim token (the ``processing_started_at`` written), or
        None when someone else holds a live claim or the row is already
        processed.
        """
        now = now or utcnow()
        stale_before = now - (lease_timeout or self.lease_timeout)
        model = self.model

        stmt = (
            update(model)
            .where(
                model.id == key,
                model.processed.is_(False),
                or_(
                    model.processing_started_at.is_(None),
                    model.processing_started_at < stale_before,
                ),
            )
            .values(processing_started_at=now)
            .returning(model.id)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            claimed = result.scalar_one_or_none() is not None
            await session.commit()

        if claimed:
            logger.info("processing_lease_claimed", key=key, table=model.__tablename__)
            return now
        logger.info("processing_lease_busy", key=key, table=model.__tablename__)
        return None

    async def release(self, key: str, token: datetime, success: bool = True, error: str | None = None) -> bool:
        """Drop the lease held under ``token``.

        ``success=True`` marks the row processed; pass ``error`` as well to
        record a terminal rejection. ``success=False`` leaves it unprocessed
        with ``error`` stored so a redelivery can reclaim it.

        Returns False, changing nothing, when the claim was taken over after
        going stale or the row was already processed by the new holder.
        """
        now = utcnow()
        model = self.model
        values = {
            "processing_started_at": None,
            "processed": success,
            "processed_at": now if success else None,
            "error": error,
        }

        async with self._session_factory() as session:
            result = await session.execute(
                update(model)
                .where(
                    model.id == key,
                    model.processing_started_at == token,
                    model.processed.is_(False),
                )
                .values(**values)
                .returning(model.id)
                .execution_options(synchronize_session=False)
            )
            released = result.scalar_one_or_none() is not None
            await session.commit()

        if not released:
            logger.warning("processing_lease_lost", key=key, table=model.__tablename__, error=error)
            return False

        logger.info(
            "processing_lease_released",
            key=key,
            table=model.__tablename__,
            processed=success,
            error=error,
        )
        return True
