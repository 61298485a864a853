"""Idempotency ledger for inbound Stripe events."""

from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelup.db.base import get_session_factory
from levelup.db.models.stripe_event import StripeEvent
from levelup.db.types import insert_for, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LedgerEntry:
    event_id: str
    already_processed: bool


class EventLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or get_session_factory()

    async def record_and_check(self, event_id: str, event_type: str, payload: dict) -> LedgerEntry:
        """Record the event if unseen and report whether it was already processed.

        The insert is ``ON CONFLICT DO NOTHING``, so concurrent deliveries of the
        same event converge on one row and the first payload wins.
        """
        async with self._session_factory() as session:
            insert = insert_for(session)
            await session.execute(
                insert(StripeEvent)
                .values(
                    id=event_id,
                    type=event_type,
                    data=payload,
                    processed=False,
                    created_at=utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["id"])
            )
            result = await session.execute(select(StripeEvent.processed).where(StripeEvent.id == event_id))
            processed = bool(result.scalar_one())
            await session.commit()

        if processed:
            logger.info("stripe_event_already_processed", event_id=event_id, event_type=event_type)
        return LedgerEntry(event_id=event_id, already_processed=processed)
