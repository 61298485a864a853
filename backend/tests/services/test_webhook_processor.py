"""Tests for Stripe webhook processing: ledger, lease, dispatch and outcomes."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe
from sqlalchemy import func, select

from levelup.db.models.audit_log import AuditLog
from levelup.db.models.exclusive_lock import ExclusiveLock
from levelup.db.models.producer_subscription import ProducerSubscription
from levelup.db.models.product import Product
from levelup.db.models.purchase import Purchase
from levelup.db.models.stripe_event import StripeEvent
from levelup.db.types import utcnow
from levelup.services.purchase_completion import PurchaseCompletionOrchestrator
from levelup.services.webhook_processor import StripeWebhookProcessor

pytestmark = pytest.mark.integration


def _make_stripe_event(event_id: str, event_type: str, data: dict) -> dict:
    """Build a minimal Stripe-style event dict."""
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": data},
    }


def _paid_session(session_id: str, metadata: dict, amount_total: int = 2500, **overrides) -> dict:
    session = {
        "id": session_id,
        "object": "checkout.session",
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": "pi_test_001",
        "amount_total": amount_total,
        "metadata": metadata,
    }
    session.update(overrides)
    return session


def _retrieve(session: dict):
    checkout = stripe.checkout.Session.construct_from(session, "sk_test_dummy")
    return patch("stripe.checkout.Session.retrieve_async", new=AsyncMock(return_value=checkout))


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.notify = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def processor(session_factory, notifier):
    orchestrator = PurchaseCompletionOrchestrator(session_factory, notifier=notifier, unified_routine_enabled=True)
    return StripeWebhookProcessor(session_factory, orchestrator=orchestrator)


@pytest.fixture
async def buyer(make_profile):
    return await make_profile()


async def _event_row(session_factory, event_id: str) -> StripeEvent:
    async with session_factory() as session:
        return await session.get(StripeEvent, event_id)


async def _count(session_factory, model, *criteria) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*criteria))
        return result.scalar_one()


async def _lock(session_factory, product_id, user_id, checkout_session_id):
    now = utcnow()
    async with session_factory() as session:
        session.add(
            ExclusiveLock(
                product_id=product_id,
                user_id=user_id,
                stripe_checkout_session_id=checkout_session_id,
                locked_at=now,
                expires_at=now + timedelta(minutes=30),
            )
        )
        await session.commit()


class TestExclusiveCheckoutDelivery:
    async def test_first_delivery_then_redelivery(
        self, processor, notifier, session_factory, buyer, make_product, make_license
    ):
        await make_license(name="Exclusive", price=2500, exclusive_allowed=True)
        product = await make_product(is_exclusive=True)
        await _lock(session_factory, product.id, buyer.id, "cs_test_a")
        metadata = {
            "user_id": str(buyer.id),
            "product_id": str(product.id),
            "is_exclusive": "true",
            "license_name": "Exclusive",
            "license_type": "Exclusive",
        }
        event = _make_stripe_event("evt_1", "checkout.session.completed", {"id": "cs_test_a"})

        with _retrieve(_paid_session("cs_test_a", metadata)) as retrieve:
            result = await processor.process(event)

        assert result.status_code == 200
        assert result.body == {"received": True}
        retrieve.assert_awaited_once_with("cs_test_a")

        async with session_factory() as session:
            purchase = (await session.execute(select(Purchase))).scalar_one()
        assert purchase.amount == 2500
        assert purchase.status == "completed"
        assert purchase.license_type == "Exclusive"
        assert purchase.is_exclusive is True
        assert await _count(session_factory, ExclusiveLock, ExclusiveLock.product_id == product.id) == 0
        notifier.notify.assert_awaited_once_with(purchase.id)
        row = await _event_row(session_factory, "evt_1")
        assert row.processed is True
        assert row.error is None

        with _retrieve(_paid_session("cs_test_a", metadata)) as retrieve:
            replay = await processor.process(event)

        assert replay.status_code == 200
        assert replay.body == {"received": True, "status": "already_processed"}
        retrieve.assert_not_awaited()
        assert await _count(session_factory, Purchase) == 1
        assert notifier.notify.await_count == 1

    async def test_exclusive_without_license_metadata_uses_exclusive_default(
        self, processor, session_factory, buyer, make_product, licenses
    ):
        product = await make_product(is_exclusive=True)
        await _lock(session_factory, product.id, buyer.id, "cs_test_nolicense")
        metadata = {"user_id": str(buyer.id), "product_id": str(product.id), "is_exclusive": "true"}

        with _retrieve(_paid_session("cs_test_nolicense", metadata, amount_total=licenses["Exclusive"].price)):
            result = await processor.process(
                _make_stripe_event("evt_4", "checkout.session.completed", {"id": "cs_test_nolicense"})
            )

        assert result.status_code == 200
        async with session_factory() as session:
            purchase = (await session.execute(select(Purchase))).scalar_one()
            sold = await session.get(Product, product.id)
        assert purchase.license_id == licenses["Exclusive"].id
        assert purchase.license_type == "Exclusive"
        assert sold.is_sold is True

    async def test_payment_intent_may_be_expanded(self, processor, session_factory, buyer, make_product, licenses):
        product = await make_product()
        metadata = {"user_id": str(buyer.id), "product_id": str(product.id), "is_exclusive": "false"}
        session = _paid_session(
            "cs_test_b", metadata, amount_total=2999, payment_intent={"id": "pi_expanded", "object": "payment_intent"}
        )

        with _retrieve(session):
            result = await processor.process(_make_stripe_event("evt_2", "checkout.session.completed", session))

        assert result.status_code == 200
        async with session_factory() as db:
            purchase = (await db.execute(select(Purchase))).scalar_one()
        assert purchase.stripe_payment_intent_id == "pi_expanded"
        assert purchase.license_type == "Standard"

    async def test_empty_catalog_uses_legacy_routine(self, processor, session_factory, buyer, make_product):
        product = await make_product()
        metadata = {
            "user_id": str(buyer.id),
            "product_id": str(product.id),
            "is_exclusive": "false",
            "license_type": "basic",
        }

        with _retrieve(_paid_session("cs_test_c", metadata, amount_total=999)):
            result = await processor.process(_make_stripe_event("evt_3", "checkout.session.completed", {"id": "cs_test_c"}))

        assert result.status_code == 200
        async with session_factory() as db:
            purchase = (await db.execute(select(Purchase))).scalar_one()
        assert purchase.license_id is None
        assert purchase.license_type == "basic"


class TestTerminalRejections:
    async def test_unpaid_session_is_terminal(self, processor, session_factory):
        session = _paid_session("cs_unpaid", {}, payment_status="unpaid")

        with _retrieve(session):
            result = await processor.process(_make_stripe_event("evt_10", "checkout.session.completed", session))

        assert result.status_code == 400
        row = await _event_row(session_factory, "evt_10")
        assert row.processed is True
        assert "not paid" in row.error

    async def test_missing_metadata_is_terminal(self, processor, session_factory):
        session = _paid_session("cs_nometa", {"user_id": "not-a-uuid"})

        with _retrieve(session):
            result = await processor.process(_make_stripe_event("evt_11", "checkout.session.completed", session))

        assert result.status_code == 400
        assert result.body == {"error": "Missing secure checkout metadata for purchase completion"}

    async def test_missing_session_id_is_terminal(self, processor):
        result = await processor.process(_make_stripe_event("evt_12", "checkout.session.completed", {}))

        assert result.status_code == 400

    async def test_incompatible_license_is_terminal(self, processor, session_factory, buyer, make_product, licenses):
        product = await make_product(is_exclusive=True)
        metadata = {
            "user_id": str(buyer.id),
            "product_id": str(product.id),
            "is_exclusive": "true",
            "license_name": "Premium",
        }

        with _retrieve(_paid_session("cs_test_d", metadata, amount_total=5999)):
            result = await processor.process(_make_stripe_event("evt_13", "checkout.session.completed", {"id": "cs_test_d"}))

        assert result.status_code == 400
        assert await _count(session_factory, Purchase) == 0
        stored = await _event_row(session_factory, "evt_13")
        assert stored.processed is True

    async def test_amount_mismatch_is_terminal(self, processor, session_factory, buyer, make_product, licenses):
        product = await make_product()
        metadata = {"user_id": str(buyer.id), "product_id": str(product.id), "license_name": "Standard"}

        with _retrieve(_paid_session("cs_test_e", metadata, amount_total=1)):
            result = await processor.process(_make_stripe_event("evt_14", "checkout.session.completed", {"id": "cs_test_e"}))

        assert result.status_code == 400
        assert "Amount mismatch" in result.body["error"]

    async def test_malformed_event(self, processor):
        result = await processor.process({"type": "checkout.session.completed"})

        assert result.status_code == 400


class TestRetryableFailures:
    async def test_transient_error_leaves_event_for_redelivery(
        self, processor, session_factory, buyer, make_product, licenses
    ):
        product = await make_product()
        metadata = {"user_id": str(buyer.id), "product_id": str(product.id), "license_name": "Standard"}
        event = _make_stripe_event("evt_20", "checkout.session.completed", {"id": "cs_test_f"})

        with patch(
            "stripe.checkout.Session.retrieve_async",
            new=AsyncMock(side_effect=stripe.APIConnectionError("network down")),
        ):
            failed = await processor.process(event)

        assert failed.status_code == 500
        assert failed.body == {"error": "Webhook processing failed"}
        row = await _event_row(session_factory, "evt_20")
        assert row.processed is False
        assert row.processing_started_at is None
        assert "network down" in row.error

        with _retrieve(_paid_session("cs_test_f", metadata, amount_total=2999)):
            retried = await processor.process(event)

        assert retried.status_code == 200
        assert await _count(session_factory, Purchase) == 1

    async def test_unresolved_subscriber_is_retryable(self, processor, session_factory):
        subscription = {"id": "sub_ghost", "customer": "cus_ghost", "status": "active", "current_period_end": 1_900_000_000}

        result = await processor.process(_make_stripe_event("evt_21", "customer.subscription.updated", subscription))

        assert result.status_code == 500
        assert (await _event_row(session_factory, "evt_21")).processed is False

    async def test_concurrent_delivery_is_skipped(self, processor, session_factory):
        event = _make_stripe_event("evt_22", "checkout.session.completed", {"id": "cs_test_g"})
        await processor.ledger.record_and_check("evt_22", "checkout.session.completed", event)
        assert await processor.lease.claim("evt_22")

        with _retrieve({}) as retrieve:
            result = await processor.process(event)

        assert result.body == {"received": True, "status": "already_processing"}
        retrieve.assert_not_awaited()


class TestSubscriptionEvents:
    async def test_subscription_updated(self, processor, session_factory, make_profile):
        profile = await make_profile(role="producer", stripe_customer_id="cus_sub")
        subscription = {"id": "sub_1", "customer": "cus_sub", "status": "active", "current_period_end": 1_900_000_000}

        result = await processor.process(_make_stripe_event("evt_30", "customer.subscription.updated", subscription))

        assert result.status_code == 200
        async with session_factory() as session:
            mirror = (
                await session.execute(select(ProducerSubscription).where(ProducerSubscription.user_id == profile.id))
            ).scalar_one()
        assert mirror.is_producer_active is True

    async def test_subscription_deleted(self, processor, session_factory, make_profile):
        profile = await make_profile(role="producer", stripe_customer_id="cus_del")
        subscription = {"id": "sub_2", "customer": "cus_del", "status": "active", "current_period_end": 1_900_000_000}
        await processor.process(_make_stripe_event("evt_31", "customer.subscription.created", subscription))

        result = await processor.process(_make_stripe_event("evt_32", "customer.subscription.deleted", subscription))

        assert result.status_code == 200
        async with session_factory() as session:
            mirror = (
                await session.execute(select(ProducerSubscription).where(ProducerSubscription.user_id == profile.id))
            ).scalar_one()
        assert mirror.subscription_status == "canceled"
        assert mirror.cancel_at_period_end is True
        assert mirror.is_producer_active is False
        assert mirror.current_period_end == datetime.fromtimestamp(1_900_000_000, tz=UTC)

    async def test_subscription_checkout(self, processor, session_factory, make_profile):
        profile = await make_profile(role="producer")
        session = _paid_session("cs_sub", {}, mode="subscription", subscription="sub_3")
        subscription = {
            "id": "sub_3",
            "customer": "cus_new_producer",
            "status": "active",
            "current_period_end": 1_900_000_000,
            "metadata": {"user_id": str(profile.id)},
        }

        with _retrieve(session), patch(
            "stripe.Subscription.retrieve_async",
            new=AsyncMock(return_value=stripe.Subscription.construct_from(subscription, "sk_test_dummy")),
        ) as retrieve_sub:
            result = await processor.process(_make_stripe_event("evt_33", "checkout.session.completed", session))

        assert result.status_code == 200
        retrieve_sub.assert_awaited_once_with("sub_3")
        async with session_factory() as session:
            mirror = (
                await session.execute(select(ProducerSubscription).where(ProducerSubscription.user_id == profile.id))
            ).scalar_one()
        assert mirror.stripe_customer_id == "cus_new_producer"

    async def test_subscription_checkout_without_subscription_id(self, processor):
        session = _paid_session("cs_sub", {}, mode="subscription", subscription=None)

        with _retrieve(session):
            result = await processor.process(_make_stripe_event("evt_34", "checkout.session.completed", session))

        assert result.status_code == 400


class TestInvoiceEvents:
    @pytest.mark.parametrize(
        ("event_type", "action"),
        [
            ("invoice.paid", "subscription_payment_succeeded"),
            ("invoice.payment_succeeded", "subscription_payment_succeeded"),
            ("invoice.payment_failed", "subscription_payment_failed"),
        ],
    )
    async def test_invoice_writes_audit_log(self, processor, session_factory, make_profile, event_type, action):
        profile = await make_profile(role="producer", stripe_customer_id="cus_inv")
        invoice = {"id": "in_1", "customer": "cus_inv", "subscription": "sub_inv"}

        result = await processor.process(_make_stripe_event("evt_40", event_type, invoice))

        assert result.status_code == 200
        async with session_factory() as session:
            audit = (await session.execute(select(AuditLog))).scalar_one()
        assert audit.user_id == profile.id
        assert audit.action == action
        assert audit.resource_type == "subscription"
        assert audit.details == {"invoice_id": "in_1", "subscription_id": "sub_inv"}

    async def test_invoice_subscription_under_parent(self, processor, session_factory, make_profile):
        await make_profile(role="producer", stripe_customer_id="cus_inv2")
        invoice = {
            "id": "in_2",
            "customer": "cus_inv2",
            "parent": {"subscription_details": {"subscription": "sub_nested"}},
        }

        await processor.process(_make_stripe_event("evt_41", "invoice.paid", invoice))

        async with session_factory() as session:
            audit = (await session.execute(select(AuditLog))).scalar_one()
        assert audit.details["subscription_id"] == "sub_nested"

    async def test_invoice_without_subscription_is_acknowledged(self, processor, session_factory):
        result = await processor.process(_make_stripe_event("evt_42", "invoice.paid", {"id": "in_3", "customer": "cus_x"}))

        assert result.status_code == 200
        assert await _count(session_factory, AuditLog) == 0


async def test_unhandled_event_type_is_acknowledged(processor, session_factory):
    result = await processor.process(_make_stripe_event("evt_50", "charge.refunded", {"id": "ch_1"}))

    assert result.status_code == 200
    assert (await _event_row(session_factory, "evt_50")).processed is True


async def test_sold_product_flag_after_exclusive_delivery(
    processor, session_factory, buyer, make_product, licenses
):
    product = await make_product(is_exclusive=True)
    await _lock(session_factory, product.id, buyer.id, "cs_test_h")
    metadata = {
        "user_id": str(buyer.id),
        "product_id": str(product.id),
        "is_exclusive": "true",
        "license_id": str(licenses["Exclusive"].id),
    }

    with _retrieve(_paid_session("cs_test_h", metadata, amount_total=19999)):
        result = await processor.process(_make_stripe_event("evt_51", "checkout.session.completed", {"id": "cs_test_h"}))

    assert result.status_code == 200
    async with session_factory() as session:
        stored = await session.get(Product, product.id)
    assert stored.is_sold is True
    assert stored.sold_to_user_id == buyer.id
