"""
API routes
"""
from fastapi import APIRouter

from fulfillment_backend.api.routes import fulfillment, webhooks

api_router = APIRouter()

api_router.include_router(fulfillment.router)
api_router.include_router(webhooks.router)
