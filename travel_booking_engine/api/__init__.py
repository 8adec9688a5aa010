"""API endpoints for the Travel Booking Engine."""

from fastapi import APIRouter

from .bookings import router as bookings_router
from .payments import router as payments_router
from .search import router as search_router

# Create main API router
api_router = APIRouter(prefix="/api/v1")

api_router.include_router(bookings_router)
api_router.include_router(payments_router)
api_router.include_router(search_router)

__all__ = ["api_router"]
