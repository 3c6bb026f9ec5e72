"""
Pydantic schemas for Registrations Service.
Handles request/response validation and serialization; the registration
client parses the same shapes back out of the API responses.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any, Generic, TypeVar, Union, Literal, Annotated
from datetime import datetime

from app.models.registration import (
    EventStatus,
    RegistrationStatus,
    OrderStatus,
    InviteStatus,
)

T = TypeVar("T")


# Request schemas
class AnswerInput(BaseModel):
    """Answer to an event-defined question."""

    question_id: int = Field(..., gt=0)
    answer: str = Field(..., max_length=5000)


class RegistrationExtras(BaseModel):
    """Fields shared by every registration-producing request."""

    answers: List[AnswerInput] = Field(default_factory=list)
    project_id: Optional[int] = Field(None, gt=0, description="Project submitted with the registration")
    allow_digital_card_display: Optional[bool] = Field(None, description="Digital card display consent")


class OrderCreate(RegistrationExtras):
    """Schema for creating (or resuming) a payment order."""

    ticket_type_id: int = Field(..., gt=0, description="Ticket type to purchase")
    quantity: int = Field(1, ge=1, le=10, description="Number of tickets (max 10)")
    invite_code: Optional[str] = Field(None, max_length=64, description="Event invite code")

    @field_validator('invite_code')
    @classmethod
    def strip_invite_code(cls, v):
        if v is None:
            return v
        v = v.strip()
        return v or None


class RegistrationCreate(RegistrationExtras):
    """Schema for the direct (free ticket) registration path."""

    ticket_type_id: Optional[int] = Field(None, gt=0, description="Free ticket type, if the event has any")
    invite_code: Optional[str] = Field(None, max_length=64, description="Event invite code")

    @field_validator('invite_code')
    @classmethod
    def strip_invite_code(cls, v):
        if v is None:
            return v
        v = v.strip()
        return v or None


class InviteRedeem(RegistrationExtras):
    """Schema for redeeming a gift (order invite) code."""


class PaymentNotification(BaseModel):
    """Gateway callback settling an order."""

    order_no: str = Field(..., max_length=50)
    transaction_id: str = Field(..., max_length=100)
    paid_at: Optional[datetime] = None
    signature: str = Field(..., description="HMAC-SHA256 of order_no and transaction_id")


# Response schemas
class PriceTierResponse(BaseModel):
    """Schema for a price tier."""

    id: int
    quantity: int
    price: float
    currency: Optional[str] = None
    is_active: bool = True

    class Config:
        from_attributes = True


class TicketTypeResponse(BaseModel):
    """Schema for a ticket type of the event catalog."""

    id: int
    name: str
    price: Optional[float] = None
    max_quantity: Optional[int] = None
    current_quantity: int = 0
    is_active: bool = True
    price_tiers: List[PriceTierResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True

    @property
    def is_available(self) -> bool:
        """Active and under its inventory limit."""
        if not self.is_active:
            return False
        return self.max_quantity is None or self.current_quantity < self.max_quantity


class QuestionResponse(BaseModel):
    """Schema for an event question."""

    id: int
    question: str
    required: bool = False

    class Config:
        from_attributes = True


class EventResponse(BaseModel):
    """Schema for the event facts the registration flow depends on."""

    id: int
    title: str
    status: EventStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    registration_deadline: Optional[datetime] = None
    max_attendees: Optional[int] = None
    require_approval: bool = False
    is_external_event: bool = False
    external_url: Optional[str] = None
    ask_digital_card_consent: bool = False
    require_project_submission: bool = False
    questions: List[QuestionResponse] = Field(default_factory=list)
    ticket_types: List[TicketTypeResponse] = Field(default_factory=list)
    registration_count: int = 0

    class Config:
        from_attributes = True


class RegistrationResponse(BaseModel):
    """Schema for a registration."""

    id: int
    event_id: int
    user_id: int
    status: RegistrationStatus
    ticket_type_id: Optional[int] = None
    order_id: Optional[int] = None
    registered_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JsapiParams(BaseModel):
    """Signed parameters for in-app payment invocation."""

    app_id: str
    time_stamp: str
    nonce_str: str
    package: str
    sign_type: str = "HMAC-SHA256"
    pay_sign: str


class CodePayment(BaseModel):
    """Scannable code payment presentation."""

    kind: Literal["code"] = "code"
    code_url: str


class JsapiPayment(BaseModel):
    """In-app invocation payment presentation."""

    kind: Literal["jsapi"] = "jsapi"
    params: JsapiParams


PaymentParams = Annotated[Union[CodePayment, JsapiPayment], Field(discriminator="kind")]


class OrderResponse(BaseModel):
    """Schema for a created or resumed payment order."""

    order_id: int
    order_no: str
    total_amount: float
    quantity: int = 1
    expired_at: datetime
    payment: Optional[PaymentParams] = None
    is_existing: bool = False


class OrderStatusResponse(BaseModel):
    """Schema for polling an order's status."""

    id: int
    order_no: str
    status: OrderStatus
    total_amount: float
    quantity: int = 1
    paid_at: Optional[datetime] = None
    expired_at: datetime
    registration: Optional[RegistrationResponse] = None


class OrderTransitionResponse(BaseModel):
    """Schema for the result of cancelling or settling an order."""

    order_id: int
    status: OrderStatus
    already_processed: bool = False
    registration_status: Optional[RegistrationStatus] = None


class InviteResponse(BaseModel):
    """Schema for an order invite code."""

    id: int
    code: str
    status: InviteStatus
    redeemed_by: Optional[int] = None
    redeemed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope shared by every endpoint."""

    success: bool = Field(True, description="Operation success status")
    message: Optional[str] = Field(None, description="Success message")
    data: Optional[T] = Field(None, description="Response data")


# Error schemas
class RegistrationErrorResponse(BaseModel):
    """Schema for error responses."""

    error_code: str = Field(..., description="Error code")
    error_message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


# Health check schemas
class HealthCheckResponse(BaseModel):
    """Schema for health check response."""

    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(default_factory=datetime.now, description="Health check timestamp")
    version: str = Field(..., description="Service version")
    database: str = Field(..., description="Database connection status")
    redis: str = Field(..., description="Redis connection status")
