"""
Turns a filled-in registration form into a registration.

Three paths: a gift code is redeemed, a paid ticket goes through a payment
order, anything else registers directly. Local preconditions are checked
first and a failing form never reaches the network.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence
import logging

from app.schemas.registration import (
    AnswerInput,
    EventResponse,
    InviteRedeem,
    InviteStatus,
    OrderCreate,
    RegistrationCreate,
    RegistrationResponse,
)
from .api_client import ApiError, RegistrationApiClient
from .links import build_gift_link
from .notifier import Notifier
from .order_lifecycle import OrderLifecycleManager, OrderSession
from .ticket_resolver import TicketSelection, TicketSelectionError, resolve_tickets

logger = logging.getLogger(__name__)

BIO_MIN_LENGTH = 15


@dataclass(frozen=True)
class FieldError:
    field: str
    code: str
    message: str


class RegistrationValidationError(Exception):
    """The form failed local validation; nothing was sent."""

    def __init__(self, errors: List[FieldError]):
        super().__init__(errors[0].message if errors else "Invalid registration form")
        self.errors = errors


@dataclass
class RegistrationForm:
    answers: Dict[int, str] = field(default_factory=dict)
    profile: Dict[str, str] = field(default_factory=dict)
    required_profile_fields: Sequence[str] = ()
    terms_required: bool = False
    accepted_terms: bool = False
    allow_digital_card_display: Optional[bool] = None
    project_id: Optional[int] = None
    selected_ticket_id: Optional[int] = None
    quantity: int = 1
    gift_code: Optional[str] = None
    invite_code: Optional[str] = None


class FinalizeOutcome(str, Enum):
    REGISTERED = "registered"
    PAYMENT_STARTED = "payment_started"
    REDEEMED = "redeemed"


@dataclass
class RegistrationResult:
    outcome: FinalizeOutcome
    selection: TicketSelection
    registration: Optional[RegistrationResponse] = None
    order_manager: Optional[OrderLifecycleManager] = None


def validate_form(event: EventResponse, form: RegistrationForm, selection: TicketSelection) -> List[FieldError]:
    """
    Check the form against the event's requirements.

    Errors are listed in the order the form presents them: terms, required
    questions, ticket type, tier, consent, profile fields, project.
    """
    errors: List[FieldError] = []

    if form.terms_required and not form.accepted_terms:
        errors.append(FieldError("terms", "accept_terms", "Please accept the participation agreement"))

    missing = [question for question in event.questions
               if question.required and not (form.answers.get(question.id) or "").strip()]
    if missing:
        errors.append(FieldError(
            "answers",
            "missing_answers",
            f"Please answer: {', '.join(question.question for question in missing)}",
        ))

    if not form.gift_code:
        if selection.error == TicketSelectionError.SELECT_TICKET_TYPE:
            errors.append(FieldError("ticket_type_id", selection.error.value, "Please select a ticket type"))
        elif selection.error == TicketSelectionError.SELECT_TIER_QUANTITY:
            errors.append(FieldError("quantity", selection.error.value, "Please select a ticket quantity"))

    if event.ask_digital_card_consent and form.allow_digital_card_display is None:
        errors.append(FieldError("allow_digital_card_display", "select_consent",
                                 "Please choose whether your digital card may be displayed"))

    for key in form.required_profile_fields:
        value = (form.profile.get(key) or "").strip()
        if not value:
            errors.append(FieldError(key, "required", f"Please fill in {key}"))
        elif key == "bio" and len(value) < BIO_MIN_LENGTH:
            errors.append(FieldError(key, "too_short", f"Bio must be at least {BIO_MIN_LENGTH} characters"))

    if event.require_project_submission and not form.project_id:
        errors.append(FieldError("project_id", "select_project", "Please select a project"))

    return errors


def _answers(answers: Mapping[int, str]) -> List[AnswerInput]:
    return [AnswerInput(question_id=question_id, answer=answer.strip())
            for question_id, answer in answers.items() if answer and answer.strip()]


class RegistrationFinalizer:
    """Submits one event's registration form."""

    def __init__(
        self,
        api: RegistrationApiClient,
        event: EventResponse,
        notifier: Notifier,
        share_base_url: str,
        manager_factory: Optional[Callable[..., OrderLifecycleManager]] = None
    ):
        self.api = api
        self.event = event
        self.notifier = notifier
        self.share_base_url = share_base_url
        self.manager_factory = manager_factory or OrderLifecycleManager
        self.registration: Optional[RegistrationResponse] = None
        self.gift_links: List[str] = []

    async def submit(self, form: RegistrationForm) -> RegistrationResult:
        """
        Validate the form and run the matching path.

        Args:
            form: Collected registration input

        Returns:
            The outcome; for paid tickets the started order manager

        Raises:
            RegistrationValidationError: If a local precondition fails
            ApiError: If the server rejects the request
        """
        selection = resolve_tickets(
            self.event.ticket_types,
            selected_ticket_id=form.selected_ticket_id,
            selected_quantity=form.quantity,
            disable_selection=bool(form.gift_code),
        )

        errors = validate_form(self.event, form, selection)
        if errors:
            self.notifier.error(errors[0].message, code=errors[0].code)
            raise RegistrationValidationError(errors)

        try:
            if form.gift_code:
                return await self._redeem(form, selection)
            if selection.is_paid_ticket:
                return await self._start_payment(form, selection)
            return await self._register(form, selection)
        except ApiError as e:
            logger.warning(f"Registration for event {self.event.id} failed: {e.error_code} {e.message}")
            self.notifier.error(e.message, code=e.error_code)
            raise

    async def _redeem(self, form: RegistrationForm, selection: TicketSelection) -> RegistrationResult:
        payload = InviteRedeem(
            answers=_answers(form.answers),
            project_id=form.project_id,
            allow_digital_card_display=form.allow_digital_card_display,
        )
        self.registration = await self.api.redeem_invite(self.event.id, form.gift_code, payload)
        logger.info(f"Redeemed gift code for event {self.event.id}")
        self.notifier.success("Registration successful", code="registered")
        return RegistrationResult(FinalizeOutcome.REDEEMED, selection, registration=self.registration)

    async def _register(self, form: RegistrationForm, selection: TicketSelection) -> RegistrationResult:
        payload = RegistrationCreate(
            ticket_type_id=selection.ticket_type_id,
            invite_code=form.invite_code,
            answers=_answers(form.answers),
            project_id=form.project_id,
            allow_digital_card_display=form.allow_digital_card_display,
        )
        self.registration = await self.api.register(self.event.id, payload)
        logger.info(f"Registered for event {self.event.id} with status {self.registration.status.value}")
        self.notifier.success("Registration successful", code="registered")
        return RegistrationResult(FinalizeOutcome.REGISTERED, selection, registration=self.registration)

    async def _start_payment(self, form: RegistrationForm, selection: TicketSelection) -> RegistrationResult:
        payload = OrderCreate(
            ticket_type_id=selection.ticket_type_id,
            quantity=selection.quantity,
            invite_code=form.invite_code,
            answers=_answers(form.answers),
            project_id=form.project_id,
            allow_digital_card_display=form.allow_digital_card_display,
        )
        manager = self.manager_factory(self.api, self.event.id, notifier=self.notifier,
                                       on_paid=self._on_order_paid)
        await manager.resume_or_create(payload)
        manager.start()
        return RegistrationResult(FinalizeOutcome.PAYMENT_STARTED, selection, order_manager=manager)

    def _on_order_paid(self, session: OrderSession):
        self.registration = session.registration
        self.gift_links = [
            build_gift_link(self.share_base_url, self.event.id, invite.code)
            for invite in session.invites or []
            if invite.status == InviteStatus.PENDING
        ]
        logger.info(f"Order {session.order_no} finalized with {len(self.gift_links)} gift links")
