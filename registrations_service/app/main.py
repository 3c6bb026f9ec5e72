"""
Main FastAPI application for Registrations Service.
Handles application startup, middleware, and routing.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import time

from app.core.errors import RegistrationError
from app.db.database import db_manager
from app.db.redis_client import redis_manager
from app.api.v1.router import router as api_router, SERVICE_VERSION
from app.services.order_service import order_service

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting Registrations Service...")

    try:
        await db_manager.initialize()
        logger.info("Database manager initialized")

        await redis_manager.initialize()
        logger.info("Redis manager initialized")

        await db_manager.create_tables()

        expired = await order_service.expire_pending_orders()
        logger.info(f"Startup sweep expired {expired} pending orders")

        logger.info("Registrations Service started successfully")

    except Exception as e:
        logger.error(f"Failed to start Registrations Service: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down Registrations Service...")

    try:
        await db_manager.close()
        await redis_manager.close()
        logger.info("Registrations Service shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI application
app = FastAPI(
    title="Registrations Service",
    description="Event registration and payment order service",
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:8080"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add request processing time to response headers."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


# Domain exception handler
@app.exception_handler(RegistrationError)
async def registration_exception_handler(request: Request, exc: RegistrationError):
    """Render domain errors with their stable error code."""
    logger.warning(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "error_message": exc.message,
            "details": exc.details,
            "timestamp": datetime.now().isoformat()
        }
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "error_message": "An internal server error occurred",
            "details": {"exception": str(exc)},
            "timestamp": datetime.now().isoformat()
        }
    )


# HTTP exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """HTTP exception handler for FastAPI HTTP exceptions."""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": "HTTP_ERROR",
            "error_message": exc.detail,
            "details": None,
            "timestamp": datetime.now().isoformat()
        },
        headers=getattr(exc, "headers", None)
    )


# Include API router
app.include_router(api_router)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with service information."""
    return {
        "service": "Registrations Service",
        "version": SERVICE_VERSION,
        "status": "running",
        "endpoints": {
            "api": "/api/v1",
            "health": "/api/v1/health",
            "docs": "/docs",
            "redoc": "/redoc"
        }
    }


# Health check endpoint (simple)
@app.get("/health")
async def simple_health_check():
    """Simple health check endpoint."""
    return {"status": "healthy", "service": "registrations"}
