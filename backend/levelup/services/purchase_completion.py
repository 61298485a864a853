"""Turn a paid checkout into exactly one purchase, entitlement and inventory change."""

from dataclasses import dataclass
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from levelup.core.config import get_settings
from levelup.core.exceptions import CompletionRoutineUnavailable
from levelup.db.base import get_session_factory
from levelup.db.purchase_routines import (
    PurchaseOutcome,
    complete_exclusive_purchase,
    complete_license_purchase,
    complete_standard_purchase,
    find_existing_purchase,
)
from levelup.metrics.cloudwatch import emit_business_event
from levelup.services.contract_notifier import ContractNotifier

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CompletionRequest:
    user_id: UUID
    product_id: UUID
    checkout_session_id: str
    payment_intent_id: str
    amount: int
    license_id: UUID | None = None
    license_type: str = "standard"
    is_exclusive: bool = False


class PurchaseCompletionOrchestrator:
    """Runs the unified routine, or a legacy routine when it is unavailable,
    then notifies the contract service once the transaction has committed."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        notifier: ContractNotifier | None = None,
        unified_routine_enabled: bool | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self.notifier = notifier or ContractNotifier()
        if unified_routine_enabled is None:
            unified_routine_enabled = get_settings().unified_purchase_routine_enabled
        self.unified_routine_enabled = unified_routine_enabled

    async def complete(self, request: CompletionRequest) -> PurchaseOutcome:
        log = logger.bind(
            checkout_session_id=request.checkout_session_id,
            product_id=str(request.product_id),
            user_id=str(request.user_id),
        )

        try:
            outcome = await self._run_in_transaction(self._unified, request)
        except CompletionRoutineUnavailable as exc:
            log.warning("license_purchase_routine_unavailable", reason=str(exc), is_exclusive=request.is_exclusive)
            legacy = self._legacy_exclusive if request.is_exclusive else self._legacy_standard
            outcome = await self._run_in_transaction(legacy, request)

        log.info(
            "purchase_completed" if outcome.created else "purchase_already_completed",
            purchase_id=str(outcome.purchase_id),
            routine=outcome.routine,
        )

        # Committed: nothing below may undo or fail the purchase
        await self.notifier.notify(outcome.purchase_id)
        if outcome.created:
            await emit_business_event(
                "purchase_completed",
                routine=outcome.routine,
                exclusive=str(outcome.is_exclusive).lower(),
            )
        return outcome

    async def _run_in_transaction(self, routine, request: CompletionRequest) -> PurchaseOutcome:
        async with self._session_factory() as session:
            try:
                outcome = await routine(session, request)
                await session.commit()
                return outcome
            except IntegrityError:
                # A concurrent completion inserted the same Stripe references first
                await session.rollback()

        async with self._session_factory() as session:
            existing_id = await find_existing_purchase(
                session, request.checkout_session_id, request.payment_intent_id
            )
        if existing_id is None:
            raise RuntimeError(
                f"Purchase insert conflicted but no purchase exists for session {request.checkout_session_id}"
            )
        return PurchaseOutcome(existing_id, created=False, routine="concurrent", is_exclusive=request.is_exclusive)

    # ── Routine adapters ────────────────────────────────────────────

    async def _unified(self, session: AsyncSession, request: CompletionRequest) -> PurchaseOutcome:
        if not self.unified_routine_enabled:
            raise CompletionRoutineUnavailable("unified purchase routine disabled")
        if request.license_id is None:
            raise CompletionRoutineUnavailable("no resolved license for checkout")
        return await complete_license_purchase(
            session,
            product_id=request.product_id,
            user_id=request.user_id,
            checkout_session_id=request.checkout_session_id,
            payment_intent_id=request.payment_intent_id,
            license_id=request.license_id,
            amount=request.amount,
        )

    async def _legacy_exclusive(self, session: AsyncSession, request: CompletionRequest) -> PurchaseOutcome:
        return await complete_exclusive_purchase(
            session,
            product_id=request.product_id,
            user_id=request.user_id,
            checkout_session_id=request.checkout_session_id,
            payment_intent_id=request.payment_intent_id,
            amount=request.amount,
            license_type=request.license_type,
        )

    async def _legacy_standard(self, session: AsyncSession, request: CompletionRequest) -> PurchaseOutcome:
        return await complete_standard_purchase(
            session,
            product_id=request.product_id,
            user_id=request.user_id,
            checkout_session_id=request.checkout_session_id,
            payment_intent_id=request.payment_intent_id,
            amount=request.amount,
            license_type=request.license_type,
        )
