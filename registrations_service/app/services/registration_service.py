"""
Registration Service for the free-ticket path and the event facts the
registration flow reads.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from app.core.config import config
from app.core.errors import (
    RegistrationError,
    EventNotFoundError,
    RegistrationClosedError,
    AlreadyRegisteredError,
    SoldOutError,
    InvalidTicketError,
)
from app.db.database import db_manager
from app.db.redis_client import get_distributed_lock
from app.models.registration import (
    Event,
    EventStatus,
    EventInvite,
    Registration,
    RegistrationAnswer,
    RegistrationStatus,
    TicketType,
)
from app.schemas.registration import (
    EventResponse,
    RegistrationCreate,
    RegistrationExtras,
    RegistrationResponse,
)
from .pricing import resolve_ticket_pricing

logger = logging.getLogger(__name__)

# Registrations that occupy a seat
SEATED_STATUSES = (
    RegistrationStatus.APPROVED,
    RegistrationStatus.PENDING,
    RegistrationStatus.PENDING_PAYMENT,
)


def registration_lock_key(event_id: int, user_id: int) -> str:
    """Lock serializing every registration-producing write of one user on one event."""
    return f"order:event:{event_id}:user:{user_id}"


def load_event(session: Session, event_id: int) -> Event:
    event = session.query(Event).filter(Event.id == event_id).first()
    if not event:
        raise EventNotFoundError(f"Event {event_id} not found", {"event_id": event_id})
    return event


def ensure_event_open(event: Event, now: datetime):
    """
    Check that the event currently accepts registrations.

    Raises:
        RegistrationClosedError: If the event is unpublished, external, ended or past its deadline
    """
    if event.status != EventStatus.PUBLISHED:
        raise RegistrationClosedError("Event is not open for registration", {"status": event.status.value})
    if event.is_external_event:
        raise RegistrationClosedError("External events register on the organizer's platform",
                                      {"external_url": event.external_url})
    if event.is_deadline_passed(now):
        raise RegistrationClosedError("Registration deadline has passed")
    if event.is_ended(now):
        raise RegistrationClosedError("Event has ended")


def count_registrations(session: Session, event_id: int) -> int:
    """Live registration count used for capacity checks."""
    return session.query(func.count(Registration.id)).filter(
        Registration.event_id == event_id,
        Registration.status.in_(SEATED_STATUSES)
    ).scalar() or 0


def find_registration(session: Session, event_id: int, user_id: int) -> Optional[Registration]:
    return session.query(Registration).filter(
        Registration.event_id == event_id,
        Registration.user_id == user_id
    ).first()


def validate_extras(event: Event, extras: RegistrationExtras):
    """
    Check question answers and project submission against the event's requirements.

    Raises:
        RegistrationError: If an answer is missing, empty or targets another event's question
    """
    question_ids = {question.id for question in event.questions}
    answered = {}
    for answer in extras.answers:
        if answer.question_id not in question_ids:
            raise RegistrationError("Answer references an unknown question",
                                    {"question_id": answer.question_id})
        answered[answer.question_id] = answer.answer.strip()

    for question in event.questions:
        if question.required and not answered.get(question.id):
            raise RegistrationError(f"Question '{question.question}' is required",
                                    {"question_id": question.id})

    if event.require_project_submission and not extras.project_id:
        raise RegistrationError("A project submission is required for this event")


def touch_event_invite(session: Session, event_id: int, code: Optional[str], now: datetime) -> Optional[EventInvite]:
    """Resolve an organizer invite code for attribution; unknown codes are ignored."""
    if not code:
        return None
    invite = session.query(EventInvite).filter(
        EventInvite.event_id == event_id,
        EventInvite.code == code
    ).first()
    if invite:
        invite.last_used_at = now
    return invite


def apply_registration(
    session: Session,
    registration: Optional[Registration],
    event_id: int,
    user_id: int,
    status: RegistrationStatus,
    extras: RegistrationExtras,
    now: datetime,
    **links
) -> Registration:
    """
    Create the user's registration or reuse their cancelled one.

    Review fields and previous answers of a reused record are reset;
    `links` sets ticket_type_id, order_id, order_invite_id and invite_id.
    """
    if registration is None:
        registration = Registration(event_id=event_id, user_id=user_id)
        session.add(registration)
    else:
        registration.answers.clear()
        registration.reviewed_at = None
        registration.reviewed_by = None
        registration.review_note = None

    registration.status = status
    registration.registered_at = now
    registration.project_id = extras.project_id
    registration.allow_digital_card_display = extras.allow_digital_card_display
    for field in ("ticket_type_id", "order_id", "order_invite_id", "invite_id"):
        setattr(registration, field, links.get(field))

    for answer in extras.answers:
        registration.answers.append(
            RegistrationAnswer(question_id=answer.question_id, answer=answer.answer)
        )

    session.flush()
    return registration


def approval_status(event: Event) -> RegistrationStatus:
    return RegistrationStatus.PENDING if event.require_approval else RegistrationStatus.APPROVED


class RegistrationService:
    """
    Direct registration for free tickets (or events without tickets).
    """

    def __init__(self):
        self.order_config = None

    async def _get_configs(self):
        """Get configuration settings."""
        if not self.order_config:
            self.order_config = await config.get_order_config()

    async def get_event(self, event_id: int) -> EventResponse:
        """
        Get the event facts, ticket catalog and live registration count.

        Raises:
            EventNotFoundError: If the event does not exist
        """
        with db_manager.get_session() as session:
            event = load_event(session, event_id)
            response = EventResponse.model_validate(event)
            response.registration_count = count_registrations(session, event_id)
            return response

    async def get_user_registration(self, event_id: int, user_id: int) -> Optional[RegistrationResponse]:
        """Get the viewer's registration for an event, if any."""
        with db_manager.get_session() as session:
            load_event(session, event_id)
            registration = find_registration(session, event_id, user_id)
            if registration is None:
                return None
            return RegistrationResponse.model_validate(registration)

    async def register(self, event_id: int, user_id: int, data: RegistrationCreate) -> RegistrationResponse:
        """
        Register a user directly, bypassing payment.

        Args:
            event_id: Event to register for
            user_id: Registering user
            data: Ticket choice, answers and optional metadata

        Returns:
            The created (or reused) registration

        Raises:
            RegistrationClosedError: If the event does not accept registrations
            AlreadyRegisteredError: If the user already holds an active registration
            SoldOutError: If the event or ticket is full
            InvalidTicketError: If the ticket is missing, unavailable or not free
        """
        await self._get_configs()

        async with get_distributed_lock(
            registration_lock_key(event_id, user_id),
            timeout=self.order_config["lock_timeout_seconds"]
        ):
            now = datetime.now(timezone.utc)
            with db_manager.get_transaction_session() as session:
                event = load_event(session, event_id)
                ensure_event_open(event, now)

                registration = find_registration(session, event_id, user_id)
                if registration and registration.is_active:
                    raise AlreadyRegisteredError("You are already registered for this event",
                                                 {"status": registration.status.value})

                validate_extras(event, data)

                if event.max_attendees is not None and count_registrations(session, event_id) >= event.max_attendees:
                    raise SoldOutError("Event is full")

                ticket = self._resolve_free_ticket(session, event, data.ticket_type_id)
                if ticket is not None:
                    ticket.current_quantity += 1

                invite = touch_event_invite(session, event_id, data.invite_code, now)
                registration = apply_registration(
                    session, registration, event_id, user_id, approval_status(event), data, now,
                    ticket_type_id=ticket.id if ticket else None,
                    invite_id=invite.id if invite else None,
                )

                response = RegistrationResponse.model_validate(registration)
                session.commit()

            logger.info(f"User {user_id} registered for event {event_id} with status {response.status.value}")
            return response

    def _resolve_free_ticket(self, session: Session, event: Event, ticket_type_id: Optional[int]) -> Optional[TicketType]:
        available = [ticket for ticket in event.ticket_types if ticket.is_available]

        if ticket_type_id is None:
            if available:
                raise InvalidTicketError("Select a ticket type")
            return None

        ticket = session.query(TicketType).filter(
            TicketType.id == ticket_type_id,
            TicketType.event_id == event.id,
            TicketType.is_active.is_(True)
        ).first()
        if ticket is None:
            raise InvalidTicketError("Ticket type not found or inactive", {"ticket_type_id": ticket_type_id})
        if not ticket.is_available:
            raise SoldOutError("Ticket type is sold out", {"ticket_type_id": ticket_type_id})

        pricing = resolve_ticket_pricing(ticket, 1)
        if pricing.is_paid:
            raise InvalidTicketError("Paid tickets require a payment order", {"ticket_type_id": ticket_type_id})
        return ticket


# Global registration service instance
registration_service = RegistrationService()
