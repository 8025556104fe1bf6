"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from bankrecon.api.health import router as health_router
from bankrecon.api.imports import router as imports_router
from bankrecon.api.jobs import router as queue_router
from bankrecon.api.review import router as review_router
from bankrecon.api.transactions import router as transactions_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(imports_router)
api_router.include_router(transactions_router)
api_router.include_router(review_router)
api_router.include_router(queue_router)
