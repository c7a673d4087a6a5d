"""API endpoints module."""

from fastapi import APIRouter

from calmirror.api.calendars import router as calendars_router
from calmirror.api.sync import router as sync_router
from calmirror.api.webhooks import router as webhooks_router

api_router = APIRouter(prefix="/api")

api_router.include_router(calendars_router)
api_router.include_router(sync_router)
api_router.include_router(webhooks_router)

__all__ = ["api_router"]
