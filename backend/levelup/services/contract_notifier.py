"""Fire-and-forget trigger for the contract-generation service.

Called after a purchase commits. The contract service is idempotent per
purchase and has its own retry path, so every failure here is logged and
swallowed: a slow or broken collaborator must never fail a paid checkout.
"""

import httpx
import structlog

from levelup.core.config import get_settings

logger = structlog.get_logger(__name__)

_GENERATE_PATH = "/generate-contract"


def contract_endpoint(base_url: str) -> str:
    """Append /generate-contract unless the configured URL already ends with it."""
    url = base_url.strip().rstrip("/")
    if url.endswith(_GENERATE_PATH):
        return url
    return f"{url}{_GENERATE_PATH}"


class ContractNotifier:
    def __init__(
        self,
        base_url: str | None = None,
        secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = base_url if base_url is not None else settings.contract_service_url
        self.secret = secret if secret is not None else settings.contract_service_secret
        self.timeout = timeout if timeout is not None else settings.contract_service_timeout_seconds
        self._transport = transport

    async def notify(self, purchase_id: object) -> bool:
        """POST the purchase id to the contract service. Never raises.

        Returns True on a 2xx response.
        """
        purchase_id = str(purchase_id)
        if not self.base_url or not self.secret:
            logger.warning(
                "contract_service_not_configured",
                purchase_id=purchase_id,
                has_url=bool(self.base_url),
                has_secret=bool(self.secret),
            )
            return False

        endpoint = contract_endpoint(self.base_url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    endpoint,
                    json={"purchase_id": purchase_id},
                    headers={"Authorization": f"Bearer {self.secret}"},
                )
        except httpx.TimeoutException:
            logger.error("contract_service_timeout", purchase_id=purchase_id, timeout_seconds=self.timeout)
            return False
        except Exception as exc:
            logger.error(
                "contract_service_call_failed",
                purchase_id=purchase_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

        if not response.is_success:
            logger.error(
                "contract_service_rejected",
                purchase_id=purchase_id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            return False

        logger.info("contract_service_notified", purchase_id=purchase_id)
        return True
