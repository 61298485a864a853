"""Stripe webhook processing: ledger, lease, dispatch, release.

Stripe delivers at least once and may deliver the same event concurrently.
Every verified event is recorded in the ledger, then processed only by the
worker holding its lease. The outcome decides how the lease is released:

* success: processed, 200.
* BusinessRuleViolation: processed with the error stored, 4xx. Retrying
  cannot help, so Stripe is told to stop.
* anything else: left unprocessed with the error stored, 500. Stripe
  redelivers and the next delivery reclaims the lease.
"""

from dataclasses import dataclass, replace
from uuid import UUID

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelup.core.config import get_settings
from levelup.core.exceptions import BusinessRuleViolation, LicenseNotFound, WebhookRejected
from levelup.db.base import get_session_factory
from levelup.db.models.audit_log import AuditLog
from levelup.db.models.stripe_event import StripeEvent
from levelup.db.models.user_profile import UserProfile
from levelup.services.event_ledger import EventLedger
from levelup.services.license_resolver import LicenseRequest, load_license_catalog, resolve_license
from levelup.services.processing_lease import ProcessingLease
from levelup.services.purchase_completion import CompletionRequest, PurchaseCompletionOrchestrator
from levelup.services.subscription_reconciler import BillingSubscription, SubscriptionReconciler, _stripe_id

logger = structlog.get_logger(__name__)

SUBSCRIPTION_SYNC_EVENTS = {"customer.subscription.created", "customer.subscription.updated"}
INVOICE_AUDIT_ACTIONS = {
    "invoice.paid": "subscription_payment_succeeded",
    "invoice.payment_succeeded": "subscription_payment_succeeded",
    "invoice.payment_failed": "subscription_payment_failed",
}


@dataclass(frozen=True)
class WebhookResult:
    status_code: int
    body: dict


def _get_stripe() -> None:
    """Configure the stripe module with the secret key."""
    stripe.api_key = get_settings().stripe_secret_key


def _as_dict(obj) -> dict:
    """Stripe SDK objects are not dicts; work on their plain dict form."""
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return dict(obj or {})


def _metadata_str(metadata: dict, key: str) -> str | None:
    value = metadata.get(key)
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _metadata_uuid(metadata: dict, key: str) -> UUID | None:
    value = _metadata_str(metadata, key)
    if value is None:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


class StripeWebhookProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        ledger: EventLedger | None = None,
        lease: ProcessingLease | None = None,
        orchestrator: PurchaseCompletionOrchestrator | None = None,
        reconciler: SubscriptionReconciler | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self.ledger = ledger or EventLedger(self._session_factory)
        self.lease = lease or ProcessingLease(StripeEvent, self._session_factory)
        self.orchestrator = orchestrator or PurchaseCompletionOrchestrator(self._session_factory)
        self.reconciler = reconciler or SubscriptionReconciler(self._session_factory)

    async def process(self, event: dict) -> WebhookResult:
        """Process one signature-verified Stripe event (as a plain dict)."""
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            return WebhookResult(400, {"error": "Invalid event payload"})

        log = logger.bind(event_id=event_id, event_type=event_type)

        entry = await self.ledger.record_and_check(event_id, event_type, event)
        if entry.already_processed:
            return WebhookResult(200, {"received": True, "status": "already_processed"})

        token = await self.lease.claim(event_id)
        if token is None:
            log.info("stripe_event_already_processing")
            return WebhookResult(200, {"received": True, "status": "already_processing"})

        data_object = (event.get("data") or {}).get("object") or {}
        try:
            await self._dispatch(event_type, data_object)
        except BusinessRuleViolation as exc:
            log.warning("stripe_event_rejected", error=str(exc), error_type=type(exc).__name__)
            await self.lease.release(event_id, token, success=True, error=str(exc))
            return WebhookResult(exc.status_code, {"error": str(exc)})
        except Exception as exc:
            log.error(
                "stripe_event_processing_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            await self.lease.release(event_id, token, success=False, error=str(exc))
            return WebhookResult(500, {"error": "Webhook processing failed"})

        await self.lease.release(event_id, token, success=True)
        log.info("stripe_event_processed")
        return WebhookResult(200, {"received": True})

    async def _dispatch(self, event_type: str, data_object: dict) -> None:
        if event_type == "checkout.session.completed":
            await self._handle_checkout_completed(data_object)
        elif event_type in SUBSCRIPTION_SYNC_EVENTS:
            await self.reconciler.reconcile(BillingSubscription.from_stripe(data_object))
        elif event_type == "customer.subscription.deleted":
            await self._handle_subscription_deleted(data_object)
        elif event_type in INVOICE_AUDIT_ACTIONS:
            await self._handle_invoice(INVOICE_AUDIT_ACTIONS[event_type], data_object)
        else:
            logger.info("stripe_event_type_ignored", event_type=event_type)

    # ── Handlers ────────────────────────────────────────────────────

    async def _handle_checkout_completed(self, event_session: dict) -> None:
        session_id = _stripe_id(event_session.get("id"))
        if not session_id:
            raise WebhookRejected("Invalid payload for checkout.session.completed")

        # Trust Stripe's current view of the session, not the event snapshot
        _get_stripe()
        checkout = _as_dict(await stripe.checkout.Session.retrieve_async(session_id))

        if checkout.get("payment_status") != "paid":
            raise WebhookRejected(f"Checkout session {session_id} is not paid")

        if checkout.get("mode") == "subscription":
            subscription_id = _stripe_id(checkout.get("subscription"))
            if not subscription_id:
                raise WebhookRejected("Subscription checkout completed without subscription id")
            subscription = _as_dict(await stripe.Subscription.retrieve_async(subscription_id))
            await self.reconciler.reconcile(BillingSubscription.from_stripe(subscription))
            return

        metadata = dict(checkout.get("metadata") or {})
        user_id = _metadata_uuid(metadata, "user_id")
        product_id = _metadata_uuid(metadata, "product_id")
        payment_intent_id = _stripe_id(checkout.get("payment_intent"))
        amount_total = checkout.get("amount_total")
        if not user_id or not product_id or not payment_intent_id or amount_total is None:
            raise WebhookRejected("Missing secure checkout metadata for purchase completion")

        is_exclusive = metadata.get("is_exclusive") == "true"
        license_name = _metadata_str(metadata, "license_name")
        legacy_license_type = _metadata_str(metadata, "license_type")
        # Only stored on the purchase by the legacy routines
        license_type = legacy_license_type or license_name or ("exclusive" if is_exclusive else "standard")

        async with self._session_factory() as session:
            catalog = await load_license_catalog(session)
        try:
            license_ = resolve_license(
                LicenseRequest(
                    license_id=_metadata_str(metadata, "license_id"),
                    license_name=license_name,
                    legacy_license_type=legacy_license_type,
                    is_exclusive_product=is_exclusive,
                ),
                catalog,
            )
            license_id = license_.id
        except LicenseNotFound:
            # Empty catalog: only the legacy routines can complete this checkout
            license_id = None

        await self.orchestrator.complete(
            CompletionRequest(
                user_id=user_id,
                product_id=product_id,
                checkout_session_id=session_id,
                payment_intent_id=payment_intent_id,
                amount=int(amount_total),
                license_id=license_id,
                license_type=license_type,
                is_exclusive=is_exclusive,
            )
        )

    async def _handle_subscription_deleted(self, subscription: dict) -> None:
        # Period end 0: keep the mirror's last known period end
        sub = BillingSubscription.from_stripe(subscription, status="canceled", current_period_end=0)
        await self.reconciler.reconcile(replace(sub, cancel_at_period_end=True))

    async def _handle_invoice(self, action: str, invoice: dict) -> None:
        customer_id = _stripe_id(invoice.get("customer"))
        subscription_id = _stripe_id(invoice.get("subscription"))
        if subscription_id is None:
            # Newer API versions nest the subscription under parent
            details = (invoice.get("parent") or {}).get("subscription_details") or {}
            subscription_id = _stripe_id(details.get("subscription"))

        log = logger.bind(invoice_id=invoice.get("id"), customer_id=customer_id, action=action)
        if not customer_id or not subscription_id:
            log.warning("invoice_missing_customer_or_subscription", subscription_id=subscription_id)
            return

        async with self._session_factory() as session:
            result = await session.execute(
                select(UserProfile.id).where(UserProfile.stripe_customer_id == customer_id)
            )
            user_id = result.scalar_one_or_none()
            if user_id is None:
                log.warning("invoice_profile_not_found")
                return

            session.add(
                AuditLog(
                    user_id=user_id,
                    action=action,
                    resource_type="subscription",
                    details={"invoice_id": invoice.get("id"), "subscription_id": subscription_id},
                )
            )
            await session.commit()

        log.info("invoice_audit_logged", user_id=str(user_id))
