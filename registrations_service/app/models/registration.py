"""
Registration models for Registrations Service.
Events with their ticket catalog, registrations, payment orders and order invites.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Enum, Numeric,
    ForeignKey, Index, CheckConstraint, UniqueConstraint, Text
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from enum import Enum as PyEnum
from datetime import datetime, timezone

Base = declarative_base()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class EventStatus(str, PyEnum):
    """Event status enumeration."""
    DRAFT = "draft"
    PUBLISHED = "published"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class RegistrationStatus(str, PyEnum):
    """Registration status enumeration."""
    PENDING = "pending"                   # Awaiting organizer approval
    APPROVED = "approved"
    WAITLISTED = "waitlisted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    PENDING_PAYMENT = "pending_payment"   # Held by an unpaid order


class OrderStatus(str, PyEnum):
    """Payment order status enumeration."""
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class PaymentMethod(str, PyEnum):
    """Payment presentation channel."""
    NATIVE = "native"   # Scannable code
    JSAPI = "jsapi"     # In-app invocation


class InviteStatus(str, PyEnum):
    """Order invite status enumeration."""
    PENDING = "pending"
    REDEEMED = "redeemed"
    INVALID = "invalid"


class Event(Base):
    """
    Event with its registration window, capacity and ticket catalog.
    """

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    organizer_id = Column(Integer, nullable=False, index=True)  # References auth service
    status = Column(Enum(EventStatus), default=EventStatus.DRAFT, nullable=False, index=True)

    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    registration_deadline = Column(DateTime(timezone=True), nullable=True)

    max_attendees = Column(Integer, nullable=True)
    require_approval = Column(Boolean, default=False, nullable=False)
    is_external_event = Column(Boolean, default=False, nullable=False)
    external_url = Column(String(500), nullable=True)
    ask_digital_card_consent = Column(Boolean, default=False, nullable=False)
    require_project_submission = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    ticket_types = relationship("TicketType", back_populates="event", cascade="all, delete-orphan",
                                order_by="TicketType.sort_order")
    questions = relationship("EventQuestion", back_populates="event", cascade="all, delete-orphan",
                             order_by="EventQuestion.position")
    invites = relationship("EventInvite", back_populates="event", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint('max_attendees IS NULL OR max_attendees >= 0', name='check_max_attendees_non_negative'),
    )

    def __repr__(self):
        return f"<Event(id={self.id}, title='{self.title}', status='{self.status.value}')>"

    def is_ended(self, now: datetime) -> bool:
        """Ended once the end time has passed or the organizer completed the event."""
        return self.status == EventStatus.COMPLETED or now >= _as_utc(self.end_time)

    def is_deadline_passed(self, now: datetime) -> bool:
        return self.registration_deadline is not None and now >= _as_utc(self.registration_deadline)


class EventQuestion(Base):
    """Custom registration question defined by the organizer."""

    __tablename__ = "event_questions"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    question = Column(String(500), nullable=False)
    required = Column(Boolean, default=False, nullable=False)
    position = Column(Integer, default=0, nullable=False)

    event = relationship("Event", back_populates="questions")


class TicketType(Base):
    """
    Ticket type of an event. Price null or zero means free.
    """

    __tablename__ = "ticket_types"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=True)
    max_quantity = Column(Integer, nullable=True)
    current_quantity = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    event = relationship("Event", back_populates="ticket_types")
    price_tiers = relationship("PriceTier", back_populates="ticket_type", cascade="all, delete-orphan",
                               order_by="PriceTier.quantity")

    __table_args__ = (
        CheckConstraint('current_quantity >= 0', name='check_ticket_current_quantity_non_negative'),
        CheckConstraint('price IS NULL OR price >= 0', name='check_ticket_price_non_negative'),
    )

    def __repr__(self):
        return f"<TicketType(id={self.id}, name='{self.name}', issued={self.current_quantity}/{self.max_quantity})>"

    @property
    def is_available(self) -> bool:
        """Active and under its inventory limit."""
        if not self.is_active:
            return False
        return self.max_quantity is None or self.current_quantity < self.max_quantity


class PriceTier(Base):
    """Quantity bucket with its own total price."""

    __tablename__ = "price_tiers"

    id = Column(Integer, primary_key=True, index=True)
    ticket_type_id = Column(Integer, ForeignKey("ticket_types.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    ticket_type = relationship("TicketType", back_populates="price_tiers")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='check_tier_quantity_positive'),
        UniqueConstraint('ticket_type_id', 'quantity', name='unique_ticket_tier_quantity'),
    )


class EventInvite(Base):
    """Organizer-issued invite code used for attribution."""

    __tablename__ = "event_invites"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(64), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    event = relationship("Event", back_populates="invites")

    __table_args__ = (
        UniqueConstraint('event_id', 'code', name='unique_event_invite_code'),
    )


class Registration(Base):
    """
    Registration of a user for an event. One record per (user, event);
    a cancelled record is reused when the user registers again.
    """

    __tablename__ = "registrations"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)  # References auth service
    status = Column(Enum(RegistrationStatus), nullable=False, index=True)

    ticket_type_id = Column(Integer, ForeignKey("ticket_types.id"), nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    order_invite_id = Column(Integer, ForeignKey("order_invites.id"), nullable=True)
    invite_id = Column(Integer, ForeignKey("event_invites.id"), nullable=True)

    project_id = Column(Integer, nullable=True)
    allow_digital_card_display = Column(Boolean, nullable=True)

    registered_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_by = Column(Integer, nullable=True)
    review_note = Column(Text, nullable=True)

    answers = relationship("RegistrationAnswer", back_populates="registration", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('event_id', 'user_id', name='unique_event_user_registration'),
        Index('idx_registration_event_status', 'event_id', 'status'),
    )

    def __repr__(self):
        return f"<Registration(id={self.id}, event_id={self.event_id}, user_id={self.user_id}, status='{self.status.value}')>"

    @property
    def is_active(self) -> bool:
        return self.status != RegistrationStatus.CANCELLED


class RegistrationAnswer(Base):
    """Answer to an event question."""

    __tablename__ = "registration_answers"

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("event_questions.id"), nullable=False)
    answer = Column(Text, nullable=False)

    registration = relationship("Registration", back_populates="answers")


class Order(Base):
    """
    Payment order for a paid ticket. Immutable once terminal.
    """

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_no = Column(String(50), unique=True, index=True, nullable=False)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    ticket_type_id = Column(Integer, ForeignKey("ticket_types.id"), nullable=False)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="CNY", nullable=False)

    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    code_url = Column(String(500), nullable=True)
    prepay_id = Column(String(100), nullable=True)
    transaction_id = Column(String(100), nullable=True, index=True)

    expired_at = Column(DateTime(timezone=True), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    invites = relationship("OrderInvite", back_populates="order", cascade="all, delete-orphan",
                           foreign_keys="OrderInvite.order_id")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='check_order_quantity_positive'),
        CheckConstraint('total_amount >= 0', name='check_order_total_non_negative'),
        Index('idx_order_user_event_status', 'user_id', 'event_id', 'status'),
        Index('idx_order_expires', 'expired_at'),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, order_no='{self.order_no}', status='{self.status.value}')>"

    def is_expired(self, now: datetime) -> bool:
        return self.status == OrderStatus.PENDING and now >= _as_utc(self.expired_at)


class OrderInvite(Base):
    """Bonus invite code generated for a multi-quantity order."""

    __tablename__ = "order_invites"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(64), unique=True, index=True, nullable=False)
    status = Column(Enum(InviteStatus), default=InviteStatus.PENDING, nullable=False)
    redeemed_by = Column(Integer, nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="invites", foreign_keys=[order_id])

    def __repr__(self):
        return f"<OrderInvite(id={self.id}, order_id={self.order_id}, status='{self.status.value}')>"
