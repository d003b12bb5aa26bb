from fastapi import APIRouter

from payhub.api.routes import health, status, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, tags=["webhooks"])
api_router.include_router(status.router, tags=["status"])
