"""
Main API router for Registrations Service.
Combines all API endpoints and provides health checks.
"""

from fastapi import APIRouter
import logging

from app.api.dependencies import check_service_health
from app.schemas.registration import HealthCheckResponse

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

# Create main router
router = APIRouter(prefix="/api/v1")

# Include sub-routers
from app.api.v1.events import router as events_router
from app.api.v1.orders import router as orders_router
from app.api.v1.payments import router as payments_router

router.include_router(events_router)
router.include_router(orders_router)
router.include_router(payments_router)


@router.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """
    Health check endpoint for the registrations service.

    Returns:
        Service health status
    """
    try:
        health_status = await check_service_health()

        return HealthCheckResponse(
            status="healthy" if health_status["overall"] == "healthy" else "unhealthy",
            version=SERVICE_VERSION,
            database=health_status["database"],
            redis=health_status["redis"],
        )

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return HealthCheckResponse(
            status="unhealthy",
            version=SERVICE_VERSION,
            database="unknown",
            redis="unknown",
        )
