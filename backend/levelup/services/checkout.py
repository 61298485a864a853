"""Start a Stripe Checkout session for a single product purchase.

Everything the webhook later trusts is decided here on the server: the
license (and so the price) comes from the catalog, and exclusive products
are reserved before the buyer ever reaches Stripe.
"""

from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

import stripe
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelup.core.config import EXCLUSIVE_LOCK_GRACE_SECONDS, get_settings
from levelup.core.exceptions import CheckoutNotPermitted, ExclusiveAlreadySold, LevelupError, ProductNotFound
from levelup.db.base import get_session_factory
from levelup.db.models.product import Product
from levelup.db.models.user_profile import UserProfile
from levelup.db.types import utcnow
from levelup.services.exclusive_lock import ExclusiveLockManager, provisional_session_id
from levelup.services.license_resolver import LicenseRequest, load_license_catalog, resolve_license

logger = structlog.get_logger(__name__)

EXCLUSIVE_BUYER_ROLES = frozenset({"confirmed_user", "producer", "admin"})


@dataclass(frozen=True)
class CheckoutRequest:
    product_id: UUID
    success_url: str
    cancel_url: str
    license_id: str | None = None
    license_type: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    url: str
    session_id: str


def _get_stripe() -> None:
    """Configure the stripe module with the secret key."""
    stripe.api_key = get_settings().stripe_secret_key


class CheckoutService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lock_manager: ExclusiveLockManager | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self.lock_manager = lock_manager or ExclusiveLockManager(self._session_factory)

    async def create_checkout(self, user_id: UUID, request: CheckoutRequest) -> CheckoutResult:
        """Create the Stripe Checkout session.

        Raises:
            ProductNotFound: unknown, unpublished or deleted product.
            ExclusiveAlreadySold: the exclusive was already sold.
            LicenseNotFound / LicenseIncompatible: no usable catalog license.
            CheckoutNotPermitted: the account may not buy this product.
            ExclusiveLockConflict: another buyer holds the reservation.
            stripe.StripeError: Stripe refused the customer or session.
        """
        settings = get_settings()
        log = logger.bind(user_id=str(user_id), product_id=str(request.product_id))

        async with self._session_factory() as session:
            product = await session.get(Product, request.product_id)
            if product is None or not product.is_published or product.deleted_at is not None:
                raise ProductNotFound(request.product_id)
            if product.is_exclusive and product.is_sold:
                raise ExclusiveAlreadySold(product.id)

            catalog = await load_license_catalog(session)
            license_ = resolve_license(
                LicenseRequest(
                    license_id=request.license_id,
                    legacy_license_type=request.license_type,
                    is_exclusive_product=product.is_exclusive,
                ),
                catalog,
            )

            profile = await session.get(UserProfile, user_id)

        if profile is None:
            raise CheckoutNotPermitted("User profile not found")
        if product.is_exclusive and profile.role not in EXCLUSIVE_BUYER_ROLES:
            raise CheckoutNotPermitted("Account must be confirmed to purchase exclusive licenses")
        if not isinstance(license_.price, int) or license_.price < 0:
            raise LevelupError(f"Invalid price configured for license {license_.name}")

        lock = None
        if product.is_exclusive:
            lock = await self.lock_manager.acquire(product.id, user_id, provisional_session_id())

        try:
            customer_id = await self._ensure_customer(profile)
            params = {
                "customer": customer_id,
                "mode": "payment",
                "line_items": [
                    {
                        "price_data": {
                            "currency": settings.stripe_currency,
                            "unit_amount": license_.price,
                            "product_data": {"name": product.title},
                        },
                        "quantity": 1,
                    }
                ],
                "success_url": request.success_url,
                "cancel_url": request.cancel_url,
                "metadata": {
                    "user_id": str(user_id),
                    "product_id": str(product.id),
                    "is_exclusive": "true" if product.is_exclusive else "false",
                    "license_id": str(license_.id),
                    "license_name": license_.name,
                    "license_type": license_.name,
                },
            }
            session_expires_at = None
            if lock is not None:
                # Measured from now: Stripe counts the minimum lifetime from session creation
                session_expires_at = utcnow() + timedelta(seconds=settings.checkout_session_lifetime_seconds)
                params["expires_at"] = int(session_expires_at.timestamp())

            _get_stripe()
            checkout_session = await stripe.checkout.Session.create_async(**params)
        except BaseException as exc:
            log.error("checkout_session_create_failed", error=str(exc), error_type=type(exc).__name__)
            if lock is not None:
                await self.lock_manager.release(product.id, lock.stripe_checkout_session_id)
            raise

        if lock is not None:
            # The reservation must outlive the session it covers
            await self.lock_manager.bind_session(
                product.id,
                user_id,
                checkout_session.id,
                expires_at=max(
                    lock.expires_at,
                    session_expires_at + timedelta(seconds=EXCLUSIVE_LOCK_GRACE_SECONDS),
                ),
            )

        log.info(
            "checkout_session_created",
            checkout_session_id=checkout_session.id,
            license_name=license_.name,
            is_exclusive=product.is_exclusive,
        )
        return CheckoutResult(url=checkout_session.url, session_id=checkout_session.id)

    async def _ensure_customer(self, profile: UserProfile) -> str:
        """Return the profile's Stripe customer id, creating the customer if needed."""
        if profile.stripe_customer_id:
            return profile.stripe_customer_id

        _get_stripe()
        customer = await stripe.Customer.create_async(
            email=profile.email,
            metadata={"user_id": str(profile.id)},
        )

        async with self._session_factory() as session:
            await session.execute(
                update(UserProfile)
                .where(UserProfile.id == profile.id, UserProfile.stripe_customer_id.is_(None))
                .values(stripe_customer_id=customer.id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            # A concurrent checkout may have stored its customer first
            result = await session.execute(
                select(UserProfile.stripe_customer_id).where(UserProfile.id == profile.id)
            )
            return result.scalar_one() or customer.id
