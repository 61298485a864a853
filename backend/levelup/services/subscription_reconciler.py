"""Mirror Stripe producer subscriptions onto local accounts.

Stripe identifies a subscriber by customer and subscription id; neither is
guaranteed to be linked to a profile yet (first checkout, manual dashboard
edits, replays). The account is found by an ordered list of lookups and the
``producer_subscriptions`` row is upserted with a freshly computed
``is_producer_active``.
"""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelup.core.exceptions import AccountNotResolved, WebhookRejected
from levelup.db.base import get_session_factory
from levelup.db.models.producer_subscription import ProducerSubscription
from levelup.db.models.user_profile import UserProfile
from levelup.db.types import insert_for, utcnow

logger = structlog.get_logger(__name__)

SUBSCRIPTION_STATUSES = frozenset({
    "active",
    "trialing",
    "past_due",
    "canceled",
    "unpaid",
    "incomplete",
    "incomplete_expired",
})
ACTIVE_STATUSES = frozenset({"active", "trialing"})


def _stripe_id(value) -> str | None:
    """Stripe expands some references into objects; accept either form."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    ref = value.get("id") if hasattr(value, "get") else getattr(value, "id", None)
    return ref.strip() or None if isinstance(ref, str) else None


@dataclass(frozen=True)
class BillingSubscription:
    customer_id: str
    subscription_id: str
    status: str
    current_period_end: int | None = None  # unix seconds; 0 or None = unknown
    cancel_at_period_end: bool = False
    metadata: dict = field(default_factory=dict)

    @property
    def metadata_user_id(self) -> str | None:
        value = self.metadata.get("user_id") if self.metadata else None
        return value.strip() or None if isinstance(value, str) else None

    @classmethod
    def from_stripe(cls, subscription, status: str | None = None, current_period_end: int | None = None):
        """Build from a Stripe subscription object or its dict form.

        Raises WebhookRejected when customer or subscription id is missing.
        """
        customer_id = _stripe_id(subscription.get("customer"))
        subscription_id = _stripe_id(subscription.get("id"))
        if not customer_id or not subscription_id:
            raise WebhookRejected("Invalid subscription payload")

        period_end = current_period_end
        if period_end is None:
            period_end = subscription.get("current_period_end")
        if period_end is None:
            # Newer API versions carry the period on the subscription items
            items = (subscription.get("items") or {}).get("data") or []
            if items:
                period_end = items[0].get("current_period_end")

        return cls(
            customer_id=customer_id,
            subscription_id=subscription_id,
            status=status or subscription.get("status") or "",
            current_period_end=int(period_end) if period_end else None,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end") or False),
            metadata=dict(subscription.get("metadata") or {}),
        )


@dataclass(frozen=True)
class ReconcileResult:
    user_id: UUID
    resolved_by: str
    is_producer_active: bool
    current_period_end: datetime


AccountLookup = Callable[[AsyncSession, BillingSubscription], Awaitable[UUID | None]]


# ── Account lookups ─────────────────────────────────────────────────


async def by_customer_id(session: AsyncSession, sub: BillingSubscription) -> UUID | None:
    result = await session.execute(
        select(UserProfile.id).where(UserProfile.stripe_customer_id == sub.customer_id)
    )
    return result.scalar_one_or_none()


async def by_metadata_user_id(session: AsyncSession, sub: BillingSubscription) -> UUID | None:
    raw = sub.metadata_user_id
    if raw is None:
        return None
    try:
        user_id = UUID(raw)
    except ValueError:
        logger.warning("subscription_metadata_user_id_invalid", subscription_id=sub.subscription_id)
        return None
    result = await session.execute(select(UserProfile.id).where(UserProfile.id == user_id))
    return result.scalar_one_or_none()


async def by_mirror_subscription_id(session: AsyncSession, sub: BillingSubscription) -> UUID | None:
    result = await session.execute(
        select(ProducerSubscription.user_id).where(
            ProducerSubscription.stripe_subscription_id == sub.subscription_id
        )
    )
    return result.scalar_one_or_none()


async def by_profile_subscription_id(session: AsyncSession, sub: BillingSubscription) -> UUID | None:
    result = await session.execute(
        select(UserProfile.id).where(UserProfile.stripe_subscription_id == sub.subscription_id).limit(1)
    )
    return result.scalar_one_or_none()


ACCOUNT_LOOKUPS: tuple[tuple[str, AccountLookup], ...] = (
    ("customer_id", by_customer_id),
    ("metadata_user_id", by_metadata_user_id),
    ("mirror_subscription_id", by_mirror_subscription_id),
    ("profile_subscription_id", by_profile_subscription_id),
)


# ── Reconciler ──────────────────────────────────────────────────────


class SubscriptionReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lookups: Sequence[tuple[str, AccountLookup]] = ACCOUNT_LOOKUPS,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self.lookups = lookups

    async def resolve_account(self, session: AsyncSession, sub: BillingSubscription) -> tuple[UUID, str]:
        for name, lookup in self.lookups:
            user_id = await lookup(session, sub)
            if user_id is not None:
                return user_id, name
        raise AccountNotResolved(sub.customer_id, sub.subscription_id)

    async def reconcile(self, sub: BillingSubscription, now: datetime | None = None) -> ReconcileResult:
        if sub.status not in SUBSCRIPTION_STATUSES:
            raise WebhookRejected(f"Unsupported subscription status: {sub.status}")

        now = now or utcnow()
        log = logger.bind(customer_id=sub.customer_id, subscription_id=sub.subscription_id)

        async with self._session_factory() as session:
            user_id, resolved_by = await self.resolve_account(session, sub)

            if sub.current_period_end:
                period_end = datetime.fromtimestamp(sub.current_period_end, tz=UTC)
            else:
                result = await session.execute(
                    select(ProducerSubscription.current_period_end).where(ProducerSubscription.user_id == user_id)
                )
                period_end = result.scalar_one_or_none() or now

            is_active = sub.status in ACTIVE_STATUSES and period_end > now

            profile = await session.get(UserProfile, user_id)
            profile_updates = {
                "stripe_subscription_id": sub.subscription_id,
                "is_producer_active": is_active,
            }
            if not profile.stripe_customer_id:
                profile_updates["stripe_customer_id"] = sub.customer_id
            await session.execute(
                update(UserProfile)
                .where(UserProfile.id == user_id)
                .values(**profile_updates)
                .execution_options(synchronize_session=False)
            )

            insert = insert_for(session)
            row = {
                "user_id": user_id,
                "stripe_customer_id": sub.customer_id,
                "stripe_subscription_id": sub.subscription_id,
                "subscription_status": sub.status,
                "current_period_end": period_end,
                "cancel_at_period_end": sub.cancel_at_period_end,
                "is_producer_active": is_active,
                "updated_at": now,
            }
            stmt = insert(ProducerSubscription).values(created_at=now, **row)
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id"],
                set_={k: v for k, v in row.items() if k != "user_id"},
            )
            await session.execute(stmt)
            await session.commit()

        log.info(
            "producer_subscription_reconciled",
            user_id=str(user_id),
            resolved_by=resolved_by,
            status=sub.status,
            is_producer_active=is_active,
        )
        return ReconcileResult(
            user_id=user_id,
            resolved_by=resolved_by,
            is_producer_active=is_active,
            current_period_end=period_end,
        )
