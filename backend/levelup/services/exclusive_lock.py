"""Single-winner reservation on exclusive products during checkout.

The reservation is a row in ``exclusive_locks`` with a unique ``product_id``.
Acquiring is an insert: the database's unique index decides the winner, so
two buyers racing for the same beat can never both reach Stripe.

Abandoned reservations expire after ``exclusive_lock_ttl_seconds``. They are
removed lazily by the next ``acquire`` on that product and periodically by
``ExclusiveLockSweeper``.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelup.core.config import get_settings
from levelup.core.exceptions import ExclusiveAlreadySold, ExclusiveLockConflict, ProductNotFound
from levelup.db.base import get_session_factory
from levelup.db.models.exclusive_lock import ExclusiveLock
from levelup.db.models.product import Product
from levelup.db.types import utcnow

logger = structlog.get_logger(__name__)


def provisional_session_id(now: datetime | None = None) -> str:
    """Placeholder session id stored until Stripe returns the real one."""
    now = now or utcnow()
    return f"pending_{int(now.timestamp() * 1000)}"


class ExclusiveLockManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        ttl: timedelta | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self.ttl = ttl or timedelta(seconds=get_settings().exclusive_lock_ttl_seconds)

    async def acquire(
        self,
        product_id: UUID,
        user_id: UUID,
        checkout_session_id: str,
        now: datetime | None = None,
    ) -> ExclusiveLock:
        """Reserve ``product_id`` for ``user_id``.

        Raises:
            ExclusiveLockConflict: a live reservation already exists.
            ExclusiveAlreadySold: the product has been sold.
            ProductNotFound: unknown product.
        """
        now = now or utcnow()
        log = logger.bind(product_id=str(product_id), user_id=str(user_id))

        async with self._session_factory() as session:
            await self._check_available(session, product_id)

            # An expired reservation on this product no longer counts
            await session.execute(
                delete(ExclusiveLock).where(
                    ExclusiveLock.product_id == product_id,
                    ExclusiveLock.expires_at <= now,
                )
            )

            lock = ExclusiveLock(
                product_id=product_id,
                user_id=user_id,
                stripe_checkout_session_id=checkout_session_id,
                locked_at=now,
                expires_at=now + self.ttl,
            )
            session.add(lock)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                log.info("exclusive_lock_conflict")
                raise ExclusiveLockConflict(product_id)

            # Re-check under the reservation: a completion may have committed meanwhile
            try:
                await self._check_available(session, product_id)
            except ExclusiveAlreadySold:
                await session.rollback()
                log.info("exclusive_lock_rejected_sold")
                raise

            await session.commit()

        log.info("exclusive_lock_acquired", expires_at=lock.expires_at.isoformat())
        return lock

    @staticmethod
    async def _check_available(session: AsyncSession, product_id: UUID) -> None:
        result = await session.execute(select(Product.is_sold).where(Product.id == product_id))
        is_sold = result.scalar_one_or_none()
        if is_sold is None:
            raise ProductNotFound(product_id)
        if is_sold:
            raise ExclusiveAlreadySold(product_id)

    async def bind_session(
        self,
        product_id: UUID,
        user_id: UUID,
        checkout_session_id: str,
        expires_at: datetime | None = None,
    ) -> bool:
        """Attach the confirmed Stripe session id to the holder's reservation.

        ``expires_at`` moves the reservation's expiry, so it can be aligned
        with the Stripe session it now covers.
        """
        values = {"stripe_checkout_session_id": checkout_session_id}
        if expires_at is not None:
            values["expires_at"] = expires_at

        async with self._session_factory() as session:
            result = await session.execute(
                update(ExclusiveLock)
                .where(ExclusiveLock.product_id == product_id, ExclusiveLock.user_id == user_id)
                .values(**values)
                .returning(ExclusiveLock.id)
                .execution_options(synchronize_session=False)
            )
            bound = result.scalar_one_or_none() is not None
            await session.commit()

        if not bound:
            logger.warning(
                "exclusive_lock_bind_missed",
                product_id=str(product_id),
                checkout_session_id=checkout_session_id,
            )
        return bound

    async def release(self, product_id: UUID, checkout_session_id: str | None = None) -> bool:
        """Delete the reservation, optionally only if it belongs to ``checkout_session_id``."""
        stmt = delete(ExclusiveLock).where(ExclusiveLock.product_id == product_id)
        if checkout_session_id is not None:
            stmt = stmt.where(ExclusiveLock.stripe_checkout_session_id == checkout_session_id)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        released = result.rowcount > 0
        logger.info("exclusive_lock_released", product_id=str(product_id), released=released)
        return released

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete every reservation past its expiry. Returns the number removed."""
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(delete(ExclusiveLock).where(ExclusiveLock.expires_at <= now))
            await session.commit()

        swept = result.rowcount or 0
        if swept:
            logger.info("exclusive_locks_swept", count=swept)
        return swept


class ExclusiveLockSweeper:
    """Background task that periodically expires abandoned reservations.

    Usage:
        sweeper = ExclusiveLockSweeper(manager)
        task = asyncio.create_task(sweeper.run())
        ...
        sweeper.stop()
        await task
    """

    def __init__(self, manager: ExclusiveLockManager, interval_seconds: float | None = None) -> None:
        self.manager = manager
        self.interval_seconds = interval_seconds or get_settings().exclusive_lock_sweep_interval_seconds
        self._stopped = asyncio.Event()

    def stop(self) -> None:
        self._stopped.set()

    async def run(self) -> None:
        logger.info("exclusive_lock_sweeper_started", interval_seconds=self.interval_seconds)
        while not self._stopped.is_set():
            try:
                await self.manager.sweep_expired()
            except Exception as exc:
                # Non-fatal: next tick retries
                logger.warning("exclusive_lock_sweep_failed", error=str(exc), error_type=type(exc).__name__)

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("exclusive_lock_sweeper_stopped")
