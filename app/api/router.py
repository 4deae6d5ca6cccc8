"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from app.api.batches import router as batches_router
from app.api.health import router as health_router
from app.api.invoices import router as invoices_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(batches_router)
api_router.include_router(invoices_router)
