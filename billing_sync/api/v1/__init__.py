"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import retry_queue, webhooks

api_router = APIRouter()

api_router.include_router(
    retry_queue.router,
    prefix="/admin/retry-queue",
    tags=["admin"]
)

api_router.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["webhooks"]
)
