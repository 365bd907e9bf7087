from fastapi import APIRouter

from app.api.v1.routes import admin, health, support, webhooks

api_router = APIRouter()
api_router.include_router(health.router, prefix="/v1", tags=["health"])
api_router.include_router(webhooks.router, prefix="/v1/webhooks", tags=["webhooks"])
api_router.include_router(support.router, prefix="/v1/support", tags=["support"])
api_router.include_router(admin.router, prefix="/v1/admin", tags=["admin"])
