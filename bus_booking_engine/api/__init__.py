"""API endpoints for the Bus Booking Engine."""

from fastapi import APIRouter
from .orders import router as orders_router
from .check_in import router as check_in_router
from .payments import router as payments_router
from .trips import router as trips_router

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# Include all routers
api_router.include_router(orders_router)
api_router.include_router(check_in_router)
api_router.include_router(payments_router)
api_router.include_router(trips_router)

__all__ = ["api_router"]
