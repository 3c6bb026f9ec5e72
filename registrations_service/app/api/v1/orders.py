"""
Payment order API endpoints for Registrations Service.
Handles order creation, status polling, cancellation, settlement and invites.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path
from typing import List, Optional
import logging

from app.api.dependencies import get_current_user, get_current_user_id
from app.core.errors import RegistrationError
from app.services.order_service import order_service
from app.schemas.registration import (
    ApiResponse,
    InviteRedeem,
    InviteResponse,
    OrderCreate,
    OrderResponse,
    OrderStatusResponse,
    OrderTransitionResponse,
    RegistrationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events/{event_id}/orders", tags=["orders"])


@router.get("/pending", response_model=ApiResponse[Optional[OrderResponse]])
async def get_pending_order(
    event_id: int = Path(..., gt=0, description="Event ID"),
    user_id: int = Depends(get_current_user_id)
):
    """
    Resume lookup for the current user's pending order.

    Returns:
        The live pending order, or null data when there is none
    """
    try:
        order = await order_service.get_pending_order(event_id, user_id)
        return ApiResponse(data=order)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Pending order lookup failed for user {user_id}, event {event_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load pending order"
        )


@router.post("", response_model=ApiResponse[OrderResponse], status_code=status.HTTP_201_CREATED)
async def create_order(
    order_data: OrderCreate,
    event_id: int = Path(..., gt=0, description="Event ID"),
    user_info: dict = Depends(get_current_user)
):
    """
    Create a payment order for a paid ticket.

    A live pending order of the same user is returned instead of creating a
    second one (is_existing is set).

    Args:
        order_data: Ticket, quantity, answers and optional metadata
        event_id: ID of the event
        user_info: Authenticated user information

    Returns:
        The order with its payment parameters
    """
    user_id = user_info["user_id"]
    try:
        order = await order_service.create_or_resume_order(
            event_id=event_id,
            user_id=user_id,
            order_data=order_data,
            payment_method=user_info["payment_method"],
            payment_openid=user_info["payment_openid"],
        )
        message = "Pending order resumed" if order.is_existing else "Order created"
        return ApiResponse(message=message, data=order)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Order creation failed for user {user_id}, event {event_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create order"
        )


@router.post("/invites/{code}/redeem", response_model=ApiResponse[RegistrationResponse])
async def redeem_invite(
    redeem_data: InviteRedeem,
    event_id: int = Path(..., gt=0, description="Event ID"),
    code: str = Path(..., min_length=1, max_length=64, description="Invite code"),
    user_id: int = Depends(get_current_user_id)
):
    """
    Redeem a gift invite from someone else's paid order.

    Returns:
        The redeemer's registration
    """
    try:
        registration = await order_service.redeem_invite(event_id, code, user_id, redeem_data)
        return ApiResponse(message="Invite redeemed", data=registration)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Invite redemption failed for user {user_id}, event {event_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to redeem invite"
        )


@router.get("/{order_id}", response_model=ApiResponse[OrderStatusResponse])
async def get_order_status(
    event_id: int = Path(..., gt=0, description="Event ID"),
    order_id: int = Path(..., gt=0, description="Order ID"),
    user_id: int = Depends(get_current_user_id)
):
    """
    Poll an order's status.

    Returns:
        Current status and, once paid, the resulting registration
    """
    try:
        order = await order_service.get_order_status(event_id, order_id, user_id)
        return ApiResponse(data=order)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Order status lookup failed for order {order_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load order"
        )


@router.post("/{order_id}/cancel", response_model=ApiResponse[OrderTransitionResponse])
async def cancel_order(
    event_id: int = Path(..., gt=0, description="Event ID"),
    order_id: int = Path(..., gt=0, description="Order ID"),
    user_id: int = Depends(get_current_user_id)
):
    """
    Cancel a pending order. Idempotent: a terminal order reports its status.

    Returns:
        Order status after the request
    """
    try:
        result = await order_service.cancel_order(event_id, order_id, user_id)
        message = "Order already processed" if result.already_processed else "Order cancelled"
        return ApiResponse(message=message, data=result)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Order cancellation failed for order {order_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel order"
        )


@router.get("/{order_id}/invites", response_model=ApiResponse[List[InviteResponse]])
async def list_order_invites(
    event_id: int = Path(..., gt=0, description="Event ID"),
    order_id: int = Path(..., gt=0, description="Order ID"),
    user_id: int = Depends(get_current_user_id)
):
    """
    List the bonus invite codes generated for an order.
    """
    try:
        invites = await order_service.list_invites(event_id, order_id, user_id)
        return ApiResponse(data=invites)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Invite listing failed for order {order_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load invites"
        )


@router.post("/{order_id}/mark-paid", response_model=ApiResponse[OrderTransitionResponse])
async def mark_order_paid(
    event_id: int = Path(..., gt=0, description="Event ID"),
    order_id: int = Path(..., gt=0, description="Order ID"),
    user_info: dict = Depends(get_current_user)
):
    """
    Manually settle an order (organizer or admin only).
    """
    try:
        result = await order_service.settle_order_manually(
            event_id, order_id, user_info["user_id"], user_info["user_role"]
        )
        return ApiResponse(message="Order settled", data=result)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Manual settlement failed for order {order_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to settle order"
        )
