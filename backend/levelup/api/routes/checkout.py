"""Checkout route: start a Stripe Checkout session for one product."""

from uuid import UUID

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from levelup.core.auth import AuthUser, require_auth
from levelup.core.exceptions import (
    BusinessRuleViolation,
    CheckoutNotPermitted,
    ExclusiveLockConflict,
    LicenseNotFound,
    ProductNotFound,
)
from levelup.services.checkout import CheckoutRequest, CheckoutService

logger = structlog.get_logger(__name__)

router = APIRouter()


# ── Request / Response schemas ──────────────────────────────────────


class CheckoutBody(BaseModel):
    product_id: UUID
    license_id: str | None = None
    license_type: str | None = None  # legacy clients send a license name here
    success_url: str
    cancel_url: str


class CheckoutResponse(BaseModel):
    url: str
    session_id: str


# ── Endpoints ───────────────────────────────────────────────────────


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutBody,
    user: AuthUser = Depends(require_auth),
):
    """Create a Stripe Checkout session and return its URL."""
    try:
        user_id = UUID(user.user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    try:
        result = await CheckoutService().create_checkout(
            user_id,
            CheckoutRequest(
                product_id=body.product_id,
                success_url=body.success_url,
                cancel_url=body.cancel_url,
                license_id=body.license_id,
                license_type=body.license_type,
            ),
        )
    except ProductNotFound:
        raise HTTPException(status_code=404, detail="Product not found")
    except LicenseNotFound:
        raise HTTPException(status_code=500, detail="No license configuration available")
    except BusinessRuleViolation as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    except CheckoutNotPermitted as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except ExclusiveLockConflict:
        raise HTTPException(
            status_code=409,
            detail="This exclusive is currently being purchased by another user",
        )
    except stripe.StripeError:
        raise HTTPException(status_code=502, detail="Payment provider unavailable")

    return CheckoutResponse(url=result.url, session_id=result.session_id)
