from fastapi import APIRouter

from levelup.api.routes import checkout, contracts, health, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, tags=["webhooks"])
api_router.include_router(checkout.router, tags=["checkout"])
api_router.include_router(contracts.router, prefix="/contracts", tags=["contracts"])
