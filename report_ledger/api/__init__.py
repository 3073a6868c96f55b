"""API routes for the Report Ledger."""

from fastapi import APIRouter

from .reports import router as reports_router
from .verify import router as verify_router

# Main API router
api_router = APIRouter()

api_router.include_router(reports_router)
api_router.include_router(verify_router)

__all__ = ["api_router"]
