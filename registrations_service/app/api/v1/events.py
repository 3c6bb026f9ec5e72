"""
Event registration API endpoints for Registrations Service.
Serves the event facts the registration flow reads and the free-ticket path.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path
from typing import Optional
import logging

from app.api.dependencies import get_current_user, get_current_user_id
from app.core.errors import RegistrationError
from app.services.registration_service import registration_service
from app.schemas.registration import (
    ApiResponse,
    EventResponse,
    RegistrationCreate,
    RegistrationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["registrations"])


@router.get("/{event_id}", response_model=ApiResponse[EventResponse])
async def get_event(event_id: int = Path(..., gt=0, description="Event ID")):
    """
    Get an event with its ticket catalog and live registration count.

    Args:
        event_id: ID of the event

    Returns:
        Event facts used by the eligibility check
    """
    try:
        event = await registration_service.get_event(event_id)
        return ApiResponse(data=event)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Failed to get event {event_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load event"
        )


@router.get("/{event_id}/registration", response_model=ApiResponse[Optional[RegistrationResponse]])
async def get_my_registration(
    event_id: int = Path(..., gt=0, description="Event ID"),
    user_id: int = Depends(get_current_user_id)
):
    """
    Get the current user's registration for an event.

    Returns:
        The registration, or null data when the user never registered
    """
    try:
        registration = await registration_service.get_user_registration(event_id, user_id)
        return ApiResponse(data=registration)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Failed to get registration of user {user_id} for event {event_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load registration"
        )


@router.post("/{event_id}/register", response_model=ApiResponse[RegistrationResponse],
             status_code=status.HTTP_201_CREATED)
async def register_for_event(
    registration_data: RegistrationCreate,
    event_id: int = Path(..., gt=0, description="Event ID"),
    user_info: dict = Depends(get_current_user)
):
    """
    Register directly for an event with a free ticket (or no ticket).

    Args:
        registration_data: Ticket choice, answers and optional metadata
        event_id: ID of the event
        user_info: Authenticated user information

    Returns:
        The created registration
    """
    user_id = user_info["user_id"]
    try:
        registration = await registration_service.register(event_id, user_id, registration_data)
        return ApiResponse(message="Registration submitted", data=registration)

    except RegistrationError:
        raise
    except Exception as e:
        logger.error(f"Registration of user {user_id} for event {event_id} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Registration failed"
        )
