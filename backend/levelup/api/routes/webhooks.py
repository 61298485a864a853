"""Stripe webhook endpoint."""

import json

import stripe
import structlog
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from levelup.core.config import get_settings
from levelup.services.webhook_processor import StripeWebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    """Verify the Stripe signature, then hand the event to the processor.

    Unverifiable deliveries are rejected before anything is recorded.
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    body = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        stripe.Webhook.construct_event(body, sig_header, settings.stripe_webhook_secret)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    logger.info("stripe_webhook_received", event_id=event.get("id"), event_type=event.get("type"))

    result = await StripeWebhookProcessor().process(event)
    return JSONResponse(status_code=result.status_code, content=result.body)
