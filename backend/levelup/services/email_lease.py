"""Send lease for the contract e-mail, stored in ``purchases.contract_email_sent_at``.

The column predates any need for a lease and has no companion "claimed at"
column, so it carries three states:

* ``NULL``: never attempted, or the last attempt failed.
* ``now + SENTINEL_OFFSET`` (a year >= 2100): a sender holds the lease. The
  real claim time is the stored value minus the offset, which is how stale
  claims are recognised.
* anything else: the time the e-mail was sent.

Readers that ignore the sentinel see a far-future "sent" date and simply
treat the e-mail as sent. A dedicated lease column would remove the encoding.
"""

import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelup.core.config import get_settings
from levelup.db.base import get_session_factory
from levelup.db.models.purchase import Purchase
from levelup.db.types import utcnow

logger = structlog.get_logger(__name__)

SENTINEL_OFFSET = timedelta(days=200 * 365)
SENTINEL_THRESHOLD = datetime(2100, 1, 1, tzinfo=UTC)


class EmailMarkerState(enum.Enum):
    UNSET = "unset"
    CLAIMED = "claimed"
    SENT = "sent"


@dataclass(frozen=True)
class EmailMarker:
    state: EmailMarkerState
    claimed_at: datetime | None = None
    sent_at: datetime | None = None

    def lease_age(self, now: datetime | None = None) -> timedelta | None:
        if self.claimed_at is None:
            return None
        return (now or utcnow()) - self.claimed_at


def encode_claim(claimed_at: datetime) -> datetime:
    return claimed_at + SENTINEL_OFFSET


def decode_marker(value: datetime | None) -> EmailMarker:
    if value is None:
        return EmailMarker(EmailMarkerState.UNSET)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    if value >= SENTINEL_THRESHOLD:
        return EmailMarker(EmailMarkerState.CLAIMED, claimed_at=value - SENTINEL_OFFSET)
    return EmailMarker(EmailMarkerState.SENT, sent_at=value)


class EmailSendLease:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lease_timeout: timedelta | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self.lease_timeout = lease_timeout or timedelta(seconds=get_settings().email_lease_timeout_seconds)

    async def claim(self, purchase_id: UUID, now: datetime | None = None) -> datetime | None:
        """Take the send lease. Returns the stored claim token, or None when
        the e-mail was sent or another sender holds a fresh claim."""
        now = now or utcnow()
        token = encode_claim(now)
        # A claim is stale when its decoded start is older than the timeout
        stale_before = encode_claim(now - self.lease_timeout)
        column = Purchase.contract_email_sent_at

        stmt = (
            update(Purchase)
            .where(
                Purchase.id == purchase_id,
                or_(
                    column.is_(None),
                    and_(column >= SENTINEL_THRESHOLD, column < stale_before),
                ),
            )
            .values(contract_email_sent_at=token)
            .returning(Purchase.id)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            claimed = result.scalar_one_or_none() is not None
            await session.commit()

        return token if claimed else None

    async def mark_sent(self, purchase_id: UUID, token: datetime, sent_at: datetime | None = None) -> bool:
        """Replace our claim with the real send time."""
        return await self._replace_claim(purchase_id, token, sent_at or utcnow())

    async def release(self, purchase_id: UUID, token: datetime) -> bool:
        """Drop our claim so a later attempt can take it."""
        return await self._replace_claim(purchase_id, token, None)

    async def _replace_claim(self, purchase_id: UUID, token: datetime, value: datetime | None) -> bool:
        # Only while the claim is still ours: a stale claim may have been taken over
        async with self._session_factory() as session:
            result = await session.execute(
                update(Purchase)
                .where(Purchase.id == purchase_id, Purchase.contract_email_sent_at == token)
                .values(contract_email_sent_at=value)
                .returning(Purchase.id)
                .execution_options(synchronize_session=False)
            )
            replaced = result.scalar_one_or_none() is not None
            await session.commit()

        if not replaced:
            logger.warning("email_lease_lost", purchase_id=str(purchase_id))
        return replaced
