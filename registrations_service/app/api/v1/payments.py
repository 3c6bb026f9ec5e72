"""
Payment gateway callback endpoint for Registrations Service.
"""

from fastapi import APIRouter, HTTPException, status
import logging

from app.core.errors import RegistrationError
from app.services.order_service import order_service
from app.schemas.registration import ApiResponse, OrderTransitionResponse, PaymentNotification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/notify", response_model=ApiResponse[OrderTransitionResponse])
async def payment_notification(notification: PaymentNotification):
    """
    Settle an order from a signed gateway notification.
    Repeated notifications for a settled order are acknowledged without effect.
    """
    try:
        result = await order_service.handle_payment_notification(notification)
        return ApiResponse(message="Notification processed", data=result)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Payment notification for order {notification.order_no} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process payment notification"
        )
