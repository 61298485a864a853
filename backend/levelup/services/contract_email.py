"""Deliver the license contract e-mail exactly once per purchase.

The send lease in ``email_lease`` guarantees a single sender; this module does
the sending with bounded exponential backoff against the e-mail HTTP API and
settles the lease (sent or released) afterwards.
"""

from dataclasses import dataclass
from uuid import UUID

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from levelup.core.config import get_settings
from levelup.core.exceptions import EmailDeliveryError
from levelup.core.logging import mask_email
from levelup.db.base import get_session_factory
from levelup.db.models.product import Product
from levelup.db.models.purchase import Purchase
from levelup.db.models.user_profile import UserProfile
from levelup.services.email_lease import EmailMarkerState, EmailSendLease, decode_marker

logger = structlog.get_logger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, EmailDeliveryError):
        return exc.retryable
    return isinstance(exc, httpx.TransportError)


def _log_retry(retry_state) -> None:
    logger.warning(
        "contract_email_retrying",
        attempt=retry_state.attempt_number,
        sleep_seconds=retry_state.next_action.sleep,
        error=str(retry_state.outcome.exception()),
    )


async def post_email(client: httpx.AsyncClient, url: str, api_key: str, message: dict) -> str | None:
    """POST one message to the e-mail API. Returns the provider message id.

    Raises EmailDeliveryError on a non-2xx response.
    """
    response = await client.post(url, json=message, headers={"Authorization": f"Bearer {api_key}"})
    if not response.is_success:
        raise EmailDeliveryError(
            f"E-mail API returned {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )
    try:
        return response.json().get("id")
    except ValueError:
        return None


@dataclass(frozen=True)
class EmailDeliveryResult:
    purchase_id: UUID
    status: str  # sent, already_sent, in_progress, not_found, contract_not_ready, not_configured, failed
    attempts: int = 0


class ContractEmailService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lease: EmailSendLease | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        wait=None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory or get_session_factory()
        self.lease = lease or EmailSendLease(self._session_factory)
        self.api_url = settings.email_api_url
        self.api_key = settings.email_api_key
        self.sender = settings.email_from
        self.timeout = settings.email_timeout_seconds
        self.max_attempts = settings.email_max_attempts
        self._transport = transport
        self._wait = wait

    async def send_contract_email(self, purchase_id: UUID) -> EmailDeliveryResult:
        log = logger.bind(purchase_id=str(purchase_id))

        async with self._session_factory() as session:
            result = await session.execute(
                select(Purchase, UserProfile.email, Product.title)
                .join(UserProfile, UserProfile.id == Purchase.user_id)
                .join(Product, Product.id == Purchase.product_id)
                .where(Purchase.id == purchase_id)
            )
            row = result.one_or_none()

        if row is None:
            log.warning("contract_email_purchase_not_found")
            return EmailDeliveryResult(purchase_id, "not_found")

        purchase, recipient, product_title = row._tuple()
        log = log.bind(recipient=mask_email(recipient))

        if not purchase.contract_pdf_path:
            log.info("contract_email_contract_not_ready")
            return EmailDeliveryResult(purchase_id, "contract_not_ready")

        if not self.api_key:
            log.warning("contract_email_not_configured")
            return EmailDeliveryResult(purchase_id, "not_configured")

        token = await self.lease.claim(purchase_id)
        if token is None:
            return await self._skipped(purchase_id, log)

        message = {
            "from": self.sender,
            "to": [recipient],
            "subject": f"Your license contract for {product_title}",
            "html": (
                f"<p>Thank you for your purchase of <strong>{product_title}</strong>.</p>"
                f"<p>License: {purchase.license_type}</p>"
                f"<p>Your contract is available in your dashboard ({purchase.contract_pdf_path}).</p>"
            ),
        }

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait or wait_exponential(multiplier=1, min=1, max=20),
            reraise=True,
            before_sleep=_log_retry,
        )

        attempts = 0
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async for attempt in retrying:
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        message_id = await post_email(client, self.api_url, self.api_key, message)
        except (EmailDeliveryError, httpx.HTTPError) as exc:
            await self.lease.release(purchase_id, token)
            log.error(
                "contract_email_failed",
                attempts=attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return EmailDeliveryResult(purchase_id, "failed", attempts=attempts)

        await self.lease.mark_sent(purchase_id, token)
        log.info("contract_email_sent", attempts=attempts, message_id=message_id)
        return EmailDeliveryResult(purchase_id, "sent", attempts=attempts)

    async def _skipped(self, purchase_id: UUID, log) -> EmailDeliveryResult:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Purchase.contract_email_sent_at).where(Purchase.id == purchase_id)
            )
            marker = decode_marker(result.scalar_one_or_none())

        if marker.state is EmailMarkerState.SENT:
            log.info("contract_email_already_sent", sent_at=marker.sent_at.isoformat())
            return EmailDeliveryResult(purchase_id, "already_sent")

        age = marker.lease_age()
        log.info(
            "contract_email_in_progress",
            lease_age_seconds=round(age.total_seconds(), 1) if age is not None else None,
        )
        return EmailDeliveryResult(purchase_id, "in_progress")
