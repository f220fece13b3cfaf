"""FastAPI application setup and configuration."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bus_booking_engine.config import settings
from bus_booking_engine.api import api_router
from bus_booking_engine.database import init_database, close_database
from bus_booking_engine.middleware import ErrorHandlerMiddleware, LoggingMiddleware
from bus_booking_engine.services.gateways import get_gateway_registry
from bus_booking_engine.utils.circuit_breaker import circuit_breaker_stats
from bus_booking_engine.utils.logging_config import setup_logging

# Set up logging
setup_logging(
    log_level="DEBUG" if settings.debug else settings.log_level,
    log_file="logs/bus_booking_engine.log" if settings.environment == "production" else None,
    enable_json_logging=settings.enable_json_logging or settings.environment == "production",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("Starting Bus Booking Engine")
    await init_database()
    logger.info(f"Payment methods available: {', '.join(get_gateway_registry().codes())}")
    yield
    logger.info("Shutting down Bus Booking Engine")
    await close_database()

app = FastAPI(
    title="Bus Booking Engine API",
    description="""
    ## Bus Booking Engine

    Booking and settlement engine for bus ticket sales.

    ### Key Features

    * **Seat Inventory**: Seat maps generated from vehicle layouts, one owner per seat
    * **Reservations**: All-or-nothing seat holds with a fixed reservation window
    * **Pricing**: Trip prices with fixed and percentage coupons
    * **Payments**: Cash, VNPay, MoMo and ZaloPay behind one gateway contract
    * **Expiry**: Lapsed holds are released by a periodic sweep
    * **Refunds & Check-in**: Per-ticket refunds and signed check-in tokens

    ### Error Handling

    The API returns structured error responses:

    ```json
    {
      "error": {
        "error_code": "SEAT_UNAVAILABLE",
        "message": "Seats unavailable: A1",
        "details": {"seat_ids": ["..."], "labels": ["A1"]},
        "suggestions": ["Choose a different seat"]
      }
    }
    ```

    ### Concurrency Safety

    - Seat, order, ticket and payment changes are conditional updates on the expected state
    - A seat set is held completely or not at all
    - Gateway callbacks are idempotent; replays change nothing
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {
            "name": "orders",
            "description": "Order creation, lookup, cancellation and refunds"
        },
        {
            "name": "payments",
            "description": "Payment gateway callbacks"
        },
        {
            "name": "check-in",
            "description": "Boarding check-in with signed tokens"
        },
        {
            "name": "trips",
            "description": "Trip provisioning and seat maps"
        },
        {
            "name": "health",
            "description": "System health and monitoring endpoints"
        }
    ],
    lifespan=lifespan,
)

# Middleware: the last one added runs first

# 1. Error handling middleware (catch all errors)
app.add_middleware(
    ErrorHandlerMiddleware,
    debug=settings.debug
)

# 2. Logging middleware (sees the final status code)
app.add_middleware(
    LoggingMiddleware,
    log_requests=settings.enable_request_logging,
    log_responses=settings.enable_request_logging
)

# 3. CORS middleware
if settings.debug:
    # Development: Allow all origins for easier development
    cors_origins = ["*"]
    cors_allow_credentials = False  # Cannot use credentials with wildcard origins
else:
    cors_origins = settings.cors_origins
    cors_allow_credentials = settings.cors_allow_credentials

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
    expose_headers=settings.cors_expose_headers
)

# Include API routes
app.include_router(api_router)


@app.get("/", tags=["health"])
async def root():
    """Basic information about the API."""
    return {
        "message": "Bus Booking Engine API",
        "version": "1.0.0",
        "docs_url": "/docs",
        "redoc_url": "/redoc",
        "status": "operational"
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Basic health check endpoint for uptime monitoring."""
    return {"status": "healthy", "service": "bus-booking-engine"}


@app.get("/metrics", tags=["health"])
async def get_metrics():
    """Payment gateway circuit breaker statistics."""
    return {"circuit_breakers": circuit_breaker_stats()}
