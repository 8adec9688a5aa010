"""FastAPI application setup and configuration."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from travel_booking_engine.config import settings
from travel_booking_engine.api import api_router
from travel_booking_engine.cache import get_cache
from travel_booking_engine.database import init_database, close_database
from travel_booking_engine.middleware import (
    ErrorHandlerMiddleware,
    LoggingMiddleware,
    register_exception_handlers,
)
from travel_booking_engine.utils.circuit_breaker import get_circuit_breaker_stats
from travel_booking_engine.utils.dependencies import close_payment_gateway
from travel_booking_engine.utils.logging_config import setup_logging

# Set up logging
setup_logging(
    log_level="DEBUG" if settings.debug else settings.log_level,
    log_file="logs/travel_booking_engine.log" if settings.environment == "production" else None,
    enable_json_logging=settings.enable_json_logging or settings.environment == "production",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    logger.info("Starting Travel Booking Engine")
    await init_database()
    yield
    # Shutdown
    logger.info("Shutting down Travel Booking Engine")
    await close_payment_gateway()
    await close_database()

app = FastAPI(
    title="Travel Booking Engine API",
    description="""
    ## Travel Booking Engine

    Booking lifecycle and reservation coordination for accommodations.

    ### Key Features

    * **Reservation holds**: a resource is held for the payment window; overlapping stays are refused
    * **Payment reconciliation**: signed gateway webhooks confirm or fail bookings, each event applied once
    * **Policies**: modification and cancellation terms computed per resource, refunds issued automatically
    * **Search**: partner inventories merged, filtered and checked against availability

    ### Identity

    Authentication happens upstream. Requests carry the caller in the `X-User-Id` header.

    ### Error Handling

    ```json
    {
      "error": {
        "code": "NOT_AVAILABLE",
        "message": "Resource R1 is not available for the requested dates",
        "details": {"resource_id": "R1"}
      },
      "error_id": "...",
      "timestamp": "..."
    }
    ```
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {
            "name": "bookings",
            "description": "Create, modify, cancel and inspect bookings"
        },
        {
            "name": "payments",
            "description": "Payment gateway webhooks"
        },
        {
            "name": "search",
            "description": "Accommodation search and availability"
        },
        {
            "name": "health",
            "description": "System health endpoints"
        }
    ],
    lifespan=lifespan,
)

register_exception_handlers(app)

# Middleware (the last added runs first)
app.add_middleware(
    ErrorHandlerMiddleware,
    debug=settings.debug
)

if settings.enable_request_logging:
    app.add_middleware(LoggingMiddleware)

# Configure CORS based on environment
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
        "message": "Travel Booking Engine API",
        "version": "1.0.0",
        "docs_url": "/docs",
        "status": "operational"
    }


@app.get("/health", tags=["health"])
async def health_check():
    """
    Health check endpoint.

    Reports whether the search cache is connected and the state of the
    payment gateway circuit breaker. The service stays healthy without Redis.
    """
    return {
        "status": "healthy",
        "service": "travel-booking-engine",
        "cache": "connected" if get_cache().available else "disabled",
        "circuit_breakers": get_circuit_breaker_stats(),
    }
