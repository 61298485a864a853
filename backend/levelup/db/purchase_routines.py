"""Transactional purchase-completion routines.

Each routine runs inside the caller's session and never commits: the caller
commits once, so purchase row, entitlement, inventory state and counters land
together or not at all.

``complete_license_purchase`` is the unified routine keyed on a resolved
catalog license. ``complete_exclusive_purchase`` and
``complete_standard_purchase`` are the older per-exclusivity routines kept for
checkouts that carry no resolvable license.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from levelup.core.exceptions import (
    AmountMismatch,
    ExclusiveAlreadySold,
    ExclusiveLockMissing,
    LicenseIncompatible,
    LicenseNotFound,
    LicenseSalesExhausted,
    ProductNotFound,
    WebhookRejected,
)
from levelup.db.models.entitlement import Entitlement
from levelup.db.models.exclusive_lock import ExclusiveLock
from levelup.db.models.license import License
from levelup.db.models.product import Product
from levelup.db.models.purchase import Purchase
from levelup.db.models.user_profile import UserProfile
from levelup.db.types import insert_for, utcnow

logger = structlog.get_logger(__name__)

EXCLUSIVE_DOWNLOAD_WINDOW = timedelta(hours=24)
STANDARD_DOWNLOAD_WINDOW = timedelta(days=7)


@dataclass(frozen=True)
class PurchaseOutcome:
    purchase_id: UUID
    created: bool  # False when an earlier delivery already completed this checkout
    routine: str
    is_exclusive: bool = False


# ── Shared steps ────────────────────────────────────────────────────


def _require_stripe_refs(checkout_session_id: str | None, payment_intent_id: str | None) -> None:
    if not checkout_session_id or not checkout_session_id.strip():
        raise WebhookRejected("Missing checkout session id")
    if not payment_intent_id or not payment_intent_id.strip():
        raise WebhookRejected("Missing payment intent id")


async def find_existing_purchase(
    session: AsyncSession, checkout_session_id: str, payment_intent_id: str
) -> UUID | None:
    """Purchase already recorded for either Stripe reference, newest first."""
    result = await session.execute(
        select(Purchase.id)
        .where(
            or_(
                Purchase.stripe_payment_intent_id == payment_intent_id,
                Purchase.stripe_checkout_session_id == checkout_session_id,
            )
        )
        .order_by(Purchase.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _load_product_for_update(session: AsyncSession, product_id: UUID) -> Product:
    result = await session.execute(select(Product).where(Product.id == product_id).with_for_update())
    product = result.scalar_one_or_none()
    if product is None:
        raise ProductNotFound(product_id)
    return product


async def _require_session_lock(session: AsyncSession, product_id: UUID, checkout_session_id: str) -> None:
    result = await session.execute(
        select(ExclusiveLock.id)
        .where(
            ExclusiveLock.product_id == product_id,
            ExclusiveLock.stripe_checkout_session_id == checkout_session_id,
        )
        .with_for_update()
    )
    if result.scalar_one_or_none() is None:
        raise ExclusiveLockMissing(product_id, checkout_session_id)


async def _grant_entitlement(
    session: AsyncSession, user_id: UUID, product_id: UUID, purchase_id: UUID, now: datetime
) -> None:
    insert = insert_for(session)
    stmt = insert(Entitlement).values(
        user_id=user_id,
        product_id=product_id,
        purchase_id=purchase_id,
        entitlement_type="purchase",
        granted_at=now,
        is_active=True,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "product_id"],
        set_={
            "purchase_id": stmt.excluded.purchase_id,
            "is_active": True,
            "granted_at": now,
        },
    )
    await session.execute(stmt)


async def _mark_exclusive_sold(session: AsyncSession, product_id: UUID, user_id: UUID, now: datetime) -> None:
    await session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(is_sold=True, sold_at=now, sold_to_user_id=user_id, is_published=False)
        .execution_options(synchronize_session=False)
    )
    await session.execute(delete(ExclusiveLock).where(ExclusiveLock.product_id == product_id))


async def _increment_purchase_count(session: AsyncSession, user_id: UUID) -> None:
    await session.execute(
        update(UserProfile)
        .where(UserProfile.id == user_id)
        .values(total_purchases=UserProfile.total_purchases + 1)
        .execution_options(synchronize_session=False)
    )


# ── Routines ────────────────────────────────────────────────────────


async def complete_license_purchase(
    session: AsyncSession,
    *,
    product_id: UUID,
    user_id: UUID,
    checkout_session_id: str,
    payment_intent_id: str,
    license_id: UUID,
    amount: int,
    now: datetime | None = None,
) -> PurchaseOutcome:
    """Complete a checkout against a catalog license."""
    _require_stripe_refs(checkout_session_id, payment_intent_id)
    now = now or utcnow()

    # Row lock on the product serialises concurrent completions for it
    product = await _load_product_for_update(session, product_id)

    existing_id = await find_existing_purchase(session, checkout_session_id, payment_intent_id)
    if existing_id is not None:
        return PurchaseOutcome(existing_id, created=False, routine="license", is_exclusive=product.is_exclusive)

    license_ = await session.get(License, license_id)
    if license_ is None:
        raise LicenseNotFound(f"License not found: {license_id}")

    if amount < 0:
        raise WebhookRejected(f"Invalid amount: {amount}")
    if license_.price != amount:
        raise AmountMismatch(license_.name, license_.price, amount)

    if product.is_exclusive:
        if not license_.exclusive_allowed:
            raise LicenseIncompatible(license_.name)
        if product.is_sold and product.sold_to_user_id != user_id:
            raise ExclusiveAlreadySold(product_id)
        await _require_session_lock(session, product_id, checkout_session_id)

    if license_.max_sales is not None:
        result = await session.execute(
            select(func.count(Purchase.id)).where(
                Purchase.product_id == product_id,
                Purchase.license_id == license_.id,
                Purchase.status == "completed",
            )
        )
        if result.scalar_one() >= license_.max_sales:
            raise LicenseSalesExhausted(license_.name)

    purchase = Purchase(
        user_id=user_id,
        product_id=product_id,
        producer_id=product.producer_id,
        stripe_payment_intent_id=payment_intent_id,
        stripe_checkout_session_id=checkout_session_id,
        amount=amount,
        status="completed",
        is_exclusive=product.is_exclusive,
        license_type=license_.name,
        license_id=license_.id,
        license_snapshot=license_.snapshot(),
        created_at=now,
        completed_at=now,
        download_expires_at=now + (EXCLUSIVE_DOWNLOAD_WINDOW if product.is_exclusive else STANDARD_DOWNLOAD_WINDOW),
    )
    session.add(purchase)
    await session.flush()

    await _grant_entitlement(session, user_id, product_id, purchase.id, now)
    if product.is_exclusive:
        await _mark_exclusive_sold(session, product_id, user_id, now)
    await _increment_purchase_count(session, user_id)

    return PurchaseOutcome(purchase.id, created=True, routine="license", is_exclusive=product.is_exclusive)


async def complete_exclusive_purchase(
    session: AsyncSession,
    *,
    product_id: UUID,
    user_id: UUID,
    checkout_session_id: str,
    payment_intent_id: str,
    amount: int,
    license_type: str = "exclusive",
    now: datetime | None = None,
) -> PurchaseOutcome:
    """Legacy exclusive completion: requires the checkout's reservation."""
    _require_stripe_refs(checkout_session_id, payment_intent_id)
    now = now or utcnow()

    product = await _load_product_for_update(session, product_id)

    existing_id = await find_existing_purchase(session, checkout_session_id, payment_intent_id)
    if existing_id is not None:
        return PurchaseOutcome(existing_id, created=False, routine="legacy_exclusive", is_exclusive=True)

    if product.is_sold and product.sold_to_user_id != user_id:
        raise ExclusiveAlreadySold(product_id)
    await _require_session_lock(session, product_id, checkout_session_id)

    purchase = Purchase(
        user_id=user_id,
        product_id=product_id,
        producer_id=product.producer_id,
        stripe_payment_intent_id=payment_intent_id,
        stripe_checkout_session_id=checkout_session_id,
        amount=amount,
        status="completed",
        is_exclusive=True,
        license_type=license_type,
        created_at=now,
        completed_at=now,
        download_expires_at=now + EXCLUSIVE_DOWNLOAD_WINDOW,
    )
    session.add(purchase)
    await session.flush()

    await _grant_entitlement(session, user_id, product_id, purchase.id, now)
    await _mark_exclusive_sold(session, product_id, user_id, now)
    await _increment_purchase_count(session, user_id)

    return PurchaseOutcome(purchase.id, created=True, routine="legacy_exclusive", is_exclusive=True)


async def complete_standard_purchase(
    session: AsyncSession,
    *,
    product_id: UUID,
    user_id: UUID,
    checkout_session_id: str,
    payment_intent_id: str,
    amount: int,
    license_type: str = "standard",
    now: datetime | None = None,
) -> PurchaseOutcome:
    """Legacy non-exclusive completion."""
    _require_stripe_refs(checkout_session_id, payment_intent_id)
    now = now or utcnow()

    product = await _load_product_for_update(session, product_id)

    existing_id = await find_existing_purchase(session, checkout_session_id, payment_intent_id)
    if existing_id is not None:
        return PurchaseOutcome(existing_id, created=False, routine="legacy_standard")

    purchase = Purchase(
        user_id=user_id,
        product_id=product_id,
        producer_id=product.producer_id,
        stripe_payment_intent_id=payment_intent_id,
        stripe_checkout_session_id=checkout_session_id,
        amount=amount,
        status="completed",
        is_exclusive=False,
        license_type=license_type,
        created_at=now,
        completed_at=now,
        download_expires_at=now + STANDARD_DOWNLOAD_WINDOW,
    )
    session.add(purchase)
    await session.flush()

    await _grant_entitlement(session, user_id, product_id, purchase.id, now)
    await _increment_purchase_count(session, user_id)

    return PurchaseOutcome(purchase.id, created=True, routine="legacy_standard")
