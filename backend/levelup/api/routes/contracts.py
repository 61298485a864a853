"""Contract e-mail trigger, called by the contract service once a PDF exists."""

import hmac
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from levelup.core.config import get_settings
from levelup.services.contract_email import ContractEmailService

router = APIRouter()

_bearer_scheme = HTTPBearer(auto_error=False)

STATUS_CODES = {"not_found": 404, "contract_not_ready": 409, "failed": 502}


class ContractEmailBody(BaseModel):
    purchase_id: UUID


class ContractEmailResponse(BaseModel):
    status: str


async def require_service_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    secret = get_settings().contract_service_secret
    if not secret:
        raise HTTPException(status_code=503, detail="Contract service is not configured")
    if credentials is None or not hmac.compare_digest(credentials.credentials, secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/email", response_model=ContractEmailResponse)
async def send_contract_email(
    body: ContractEmailBody,
    _: None = Depends(require_service_secret),
):
    """Send the purchase's contract e-mail at most once."""
    result = await ContractEmailService().send_contract_email(body.purchase_id)
    status_code = STATUS_CODES.get(result.status)
    if status_code is not None:
        raise HTTPException(status_code=status_code, detail=result.status)
    return ContractEmailResponse(status=result.status)
