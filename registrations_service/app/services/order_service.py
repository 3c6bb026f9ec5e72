"""
Order Service for paid registrations.
Handles order creation, settlement, cancellation, expiry and gift invite
redemption with atomic transactions.
"""

import secrets
import time
from datetime import datetime, timezone, timedelta
from typing import Optional, List
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from app.core.config import config
from app.core.errors import (
    AlreadyRegisteredError,
    InvalidTicketError,
    InviteError,
    OrderNotFoundError,
    OrderStateError,
    PaymentIdentityRequiredError,
    PaymentProviderError,
    PermissionDeniedError,
    SoldOutError,
)
from app.db.database import db_manager
from app.db.redis_client import redis_manager, get_distributed_lock
from app.models.registration import (
    InviteStatus,
    Order,
    OrderInvite,
    OrderStatus,
    PaymentMethod,
    Registration,
    RegistrationStatus,
    TicketType,
)
from app.schemas.registration import (
    CodePayment,
    InviteRedeem,
    InviteResponse,
    JsapiPayment,
    OrderCreate,
    OrderResponse,
    OrderStatusResponse,
    OrderTransitionResponse,
    PaymentNotification,
    RegistrationResponse,
)
from .event_publisher import OrderEventPublisher
from .payment_provider import payment_provider
from .pricing import resolve_ticket_pricing
from .registration_service import (
    apply_registration,
    approval_status,
    ensure_event_open,
    find_registration,
    load_event,
    registration_lock_key,
    touch_event_invite,
    validate_extras,
)

logger = logging.getLogger(__name__)

ORDER_NO_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


class OrderService:
    """
    Payment order service with atomic operations.
    One pending order per (user, event) is enforced under a distributed lock;
    every transition out of pending is a status-conditioned update.
    """

    def __init__(self):
        self.order_config = None
        self.event_publisher = None
        self.payment_provider = payment_provider

    async def _get_configs(self):
        """Get configuration settings."""
        if not self.order_config:
            self.order_config = await config.get_order_config()

    async def _get_event_publisher(self):
        """Get event publisher instance."""
        if not self.event_publisher:
            await redis_manager.initialize()
            self.event_publisher = OrderEventPublisher(redis_manager)
        return self.event_publisher

    async def _publish(self, method: str, *args, **kwargs):
        try:
            publisher = await self._get_event_publisher()
            await getattr(publisher, method)(*args, **kwargs)
        except Exception as e:
            logger.error(f"Failed to publish order event {method}: {e}")

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _generate_order_no(self) -> str:
        """Generate unique order number."""
        suffix = "".join(secrets.choice(ORDER_NO_ALPHABET) for _ in range(6))
        return f"EVT{int(time.time() * 1000)}{suffix}"

    def _generate_invite_code(self) -> str:
        return secrets.token_urlsafe(18)

    def _pending_orders(self, session: Session, event_id: int, user_id: int) -> List[Order]:
        return session.query(Order).filter(
            Order.event_id == event_id,
            Order.user_id == user_id,
            Order.status == OrderStatus.PENDING
        ).order_by(Order.created_at.desc(), Order.id.desc()).all()

    def _load_order(self, session: Session, event_id: int, order_id: int, user_id: Optional[int] = None) -> Order:
        order = session.query(Order).filter(
            Order.id == order_id,
            Order.event_id == event_id
        ).first()
        if not order or (user_id is not None and order.user_id != user_id):
            raise OrderNotFoundError(f"Order {order_id} not found", {"order_id": order_id})
        return order

    def _close_order(self, session: Session, order: Order, status: OrderStatus, now: datetime) -> bool:
        """
        Move a pending order to cancelled/expired and release what it held.

        Returns:
            True if this call performed the transition
        """
        updated = session.query(Order).filter(
            Order.id == order.id,
            Order.status == OrderStatus.PENDING
        ).update({Order.status: status, Order.cancelled_at: now}, synchronize_session=False)
        if not updated:
            return False

        session.query(Registration).filter(
            Registration.order_id == order.id,
            Registration.status == RegistrationStatus.PENDING_PAYMENT
        ).update({Registration.status: RegistrationStatus.CANCELLED}, synchronize_session=False)

        session.query(OrderInvite).filter(
            OrderInvite.order_id == order.id,
            OrderInvite.status == InviteStatus.PENDING
        ).update({OrderInvite.status: InviteStatus.INVALID}, synchronize_session=False)

        session.query(TicketType).filter(
            TicketType.id == order.ticket_type_id
        ).update({TicketType.current_quantity: TicketType.current_quantity - order.quantity},
                 synchronize_session=False)

        session.refresh(order)
        return True

    async def _order_response(self, order: Order, is_existing: bool = False) -> OrderResponse:
        payment = None
        if order.payment_method == PaymentMethod.JSAPI and order.prepay_id:
            payment = JsapiPayment(params=await self.payment_provider.build_jsapi_params(order.prepay_id))
        elif order.code_url:
            payment = CodePayment(code_url=order.code_url)

        return OrderResponse(
            order_id=order.id,
            order_no=order.order_no,
            total_amount=float(order.total_amount),
            quantity=order.quantity,
            expired_at=order.expired_at,
            payment=payment,
            is_existing=is_existing,
        )

    async def create_or_resume_order(
        self,
        event_id: int,
        user_id: int,
        order_data: OrderCreate,
        payment_method: PaymentMethod = PaymentMethod.NATIVE,
        payment_openid: Optional[str] = None
    ) -> OrderResponse:
        """
        Create a payment order, or return the user's live pending order.

        Args:
            event_id: Event being registered for
            user_id: Paying user
            order_data: Ticket, quantity, answers and optional metadata
            payment_method: Presentation channel chosen from the user agent
            payment_openid: Payer identity required for in-app payment

        Returns:
            OrderResponse; is_existing is set when a pending order was resumed

        Raises:
            PaymentIdentityRequiredError: If in-app payment is requested without a payer identity
            RegistrationClosedError: If the event does not accept registrations
            AlreadyRegisteredError: If the user already holds an active registration
            InvalidTicketError: If the ticket or quantity cannot be priced, or is free
            SoldOutError: If ticket inventory or event capacity is exhausted
            PaymentProviderError: If the gateway rejects the order
        """
        await self._get_configs()

        if order_data.quantity > self.order_config["max_order_quantity"]:
            raise InvalidTicketError(
                f"At most {self.order_config['max_order_quantity']} tickets per order",
                {"quantity": order_data.quantity}
            )

        async with get_distributed_lock(
            registration_lock_key(event_id, user_id),
            timeout=self.order_config["lock_timeout_seconds"]
        ):
            now = self._now()
            expired_orders = []

            with db_manager.get_transaction_session() as session:
                for pending in self._pending_orders(session, event_id, user_id):
                    if not pending.is_expired(now):
                        response = await self._order_response(pending, is_existing=True)
                        session.commit()
                        logger.info(f"Resuming pending order {pending.order_no} for user {user_id}")
                        return response
                    if self._close_order(session, pending, OrderStatus.EXPIRED, now):
                        expired_orders.append(pending)
                session.commit()

            for expired in expired_orders:
                logger.warning(f"Stale pending order expired: {expired.order_no}")
                await self._publish("publish_order_cancelled", expired)

            if payment_method == PaymentMethod.JSAPI and not payment_openid:
                raise PaymentIdentityRequiredError(
                    "A payment identity must be linked before paying in the app"
                )

            with db_manager.get_transaction_session() as session:
                event = load_event(session, event_id)
                ensure_event_open(event, now)
                event_title = event.title

                ticket = session.query(TicketType).filter(
                    TicketType.id == order_data.ticket_type_id,
                    TicketType.event_id == event_id,
                    TicketType.is_active.is_(True)
                ).first()
                if not ticket:
                    raise InvalidTicketError("Ticket type not found or inactive",
                                             {"ticket_type_id": order_data.ticket_type_id})

                registration = find_registration(session, event_id, user_id)
                if registration and registration.is_active:
                    raise AlreadyRegisteredError("You are already registered for this event",
                                                 {"status": registration.status.value})

                validate_extras(event, order_data)

                pricing = resolve_ticket_pricing(ticket, order_data.quantity)
                if not pricing.is_paid:
                    raise InvalidTicketError("Free tickets register directly without payment",
                                             {"ticket_type_id": ticket.id})

                self._reserve_inventory(session, event, ticket, order_data.quantity)

                invite = touch_event_invite(session, event_id, order_data.invite_code, now)

                order = Order(
                    order_no=self._generate_order_no(),
                    event_id=event_id,
                    user_id=user_id,
                    ticket_type_id=ticket.id,
                    quantity=order_data.quantity,
                    unit_price=pricing.unit_price,
                    total_amount=pricing.total_amount,
                    currency=(pricing.tier.currency if pricing.tier is not None and pricing.tier.currency
                              else self.order_config["currency"]),
                    status=OrderStatus.PENDING,
                    payment_method=payment_method,
                    expired_at=now + timedelta(minutes=self.order_config["order_expire_minutes"]),
                )
                session.add(order)
                session.flush()

                apply_registration(
                    session, registration, event_id, user_id, RegistrationStatus.PENDING_PAYMENT,
                    order_data, now,
                    ticket_type_id=ticket.id,
                    order_id=order.id,
                    invite_id=invite.id if invite else None,
                )

                for _ in range(order_data.quantity - 1):
                    session.add(OrderInvite(order_id=order.id, code=self._generate_invite_code()))

                session.commit()

            logger.info(f"Order created: {order.order_no} ({order.quantity} x ticket {order.ticket_type_id})")

            try:
                amount = int(pricing.total_amount * 100)
                description = f"{event_title} ticket"
                if payment_method == PaymentMethod.JSAPI:
                    prepay_id = await self.payment_provider.create_jsapi_order(
                        order.order_no, description, amount, payment_openid, currency=order.currency
                    )
                    code_url = None
                else:
                    code_url = await self.payment_provider.create_native_order(
                        order.order_no, description, amount, currency=order.currency
                    )
                    prepay_id = None
            except Exception as e:
                logger.error(f"Payment provider failed for order {order.order_no}: {e}")
                await self._cancel_order_by_id(order.id, OrderStatus.CANCELLED)
                raise PaymentProviderError("Failed to create the payment order", {"order_no": order.order_no})

            with db_manager.get_transaction_session() as session:
                order = session.query(Order).filter(Order.id == order.id).first()
                order.code_url = code_url
                order.prepay_id = prepay_id
                response = await self._order_response(order)
                session.commit()

            await self._publish("publish_order_created", order)
            return response

    def _reserve_inventory(self, session: Session, event, ticket: TicketType, quantity: int):
        """Check ticket inventory and event capacity, then take the seats."""
        if ticket.max_quantity is not None and ticket.current_quantity + quantity > ticket.max_quantity:
            raise SoldOutError("Not enough tickets left", {"ticket_type_id": ticket.id})

        if event.max_attendees:
            issued = session.query(func.coalesce(func.sum(TicketType.current_quantity), 0)).filter(
                TicketType.event_id == event.id
            ).scalar()
            if issued + quantity > event.max_attendees:
                raise SoldOutError("Event is full", {"event_id": event.id})

        criteria = [TicketType.id == ticket.id]
        if ticket.max_quantity is not None:
            criteria.append(TicketType.current_quantity <= ticket.max_quantity - quantity)
        updated = session.query(TicketType).filter(*criteria).update(
            {TicketType.current_quantity: TicketType.current_quantity + quantity},
            synchronize_session=False
        )
        if not updated:
            raise SoldOutError("Not enough tickets left", {"ticket_type_id": ticket.id})

    async def get_pending_order(self, event_id: int, user_id: int) -> Optional[OrderResponse]:
        """
        Resume lookup: the user's live pending order for an event.
        Expired pending orders are cancelled first.
        """
        now = self._now()
        expired_orders = []
        response = None

        with db_manager.get_transaction_session() as session:
            for pending in self._pending_orders(session, event_id, user_id):
                if pending.is_expired(now):
                    if self._close_order(session, pending, OrderStatus.EXPIRED, now):
                        expired_orders.append(pending)
                elif response is None:
                    response = await self._order_response(pending, is_existing=True)
            session.commit()

        for expired in expired_orders:
            logger.warning(f"Pending order expired on lookup: {expired.order_no}")
            await self._publish("publish_order_cancelled", expired)

        return response

    async def get_order_status(self, event_id: int, order_id: int, user_id: int) -> OrderStatusResponse:
        """Get an order's status and, once settled, the resulting registration."""
        with db_manager.get_session() as session:
            order = self._load_order(session, event_id, order_id, user_id)
            registration = session.query(Registration).filter(
                Registration.order_id == order.id,
                Registration.user_id == user_id
            ).first()

            return OrderStatusResponse(
                id=order.id,
                order_no=order.order_no,
                status=order.status,
                total_amount=float(order.total_amount),
                quantity=order.quantity,
                paid_at=order.paid_at,
                expired_at=order.expired_at,
                registration=RegistrationResponse.model_validate(registration) if registration else None,
            )

    async def _cancel_order_by_id(self, order_id: int, status: OrderStatus) -> bool:
        with db_manager.get_transaction_session() as session:
            order = session.query(Order).filter(Order.id == order_id).first()
            if not order:
                return False
            changed = self._close_order(session, order, status, self._now())
            session.commit()

        if changed:
            logger.info(f"Order {order.order_no} moved to {status.value}")
            await self._publish("publish_order_cancelled", order)
        return changed

    async def cancel_order(self, event_id: int, order_id: int, user_id: int) -> OrderTransitionResponse:
        """
        Cancel the user's pending order. Cancelling a terminal order is a
        no-op that reports its current status.

        Raises:
            OrderNotFoundError: If the order does not exist or belongs to someone else
        """
        now = self._now()
        with db_manager.get_transaction_session() as session:
            order = self._load_order(session, event_id, order_id, user_id)
            status = OrderStatus.EXPIRED if order.is_expired(now) else OrderStatus.CANCELLED
            changed = self._close_order(session, order, status, now)
            session.commit()

        if changed:
            logger.info(f"Order {order.order_no} {status.value} by user {user_id}")
            await self._publish("publish_order_cancelled", order)

        return OrderTransitionResponse(
            order_id=order.id,
            status=order.status,
            already_processed=not changed,
        )

    async def mark_order_paid(
        self,
        order_no: str,
        transaction_id: str,
        paid_at: Optional[datetime] = None
    ) -> OrderTransitionResponse:
        """
        Settle a pending order. Only the first settlement takes effect.

        Raises:
            OrderNotFoundError: If no order carries this number
        """
        paid_at = paid_at or self._now()
        registration_status = None

        with db_manager.get_transaction_session() as session:
            order = session.query(Order).filter(Order.order_no == order_no).first()
            if not order:
                raise OrderNotFoundError(f"Order {order_no} not found", {"order_no": order_no})

            updated = session.query(Order).filter(
                Order.id == order.id,
                Order.status == OrderStatus.PENDING
            ).update({
                Order.status: OrderStatus.PAID,
                Order.transaction_id: transaction_id,
                Order.paid_at: paid_at,
            }, synchronize_session=False)

            if updated:
                event = load_event(session, order.event_id)
                registration_status = approval_status(event)
                session.query(Registration).filter(
                    Registration.order_id == order.id,
                    Registration.status == RegistrationStatus.PENDING_PAYMENT
                ).update({Registration.status: registration_status}, synchronize_session=False)
                session.refresh(order)

            session.commit()

        if not updated:
            logger.info(f"Order {order_no} already {order.status.value}, settlement ignored")
            return OrderTransitionResponse(order_id=order.id, status=order.status, already_processed=True)

        logger.info(f"Order paid: {order_no} (transaction {transaction_id})")
        await self._publish("publish_order_paid", order, registration_status.value)
        return OrderTransitionResponse(
            order_id=order.id,
            status=OrderStatus.PAID,
            registration_status=registration_status,
        )

    async def settle_order_manually(self, event_id: int, order_id: int, actor_id: int,
                                    actor_role: Optional[str] = None) -> OrderTransitionResponse:
        """
        Organizer/admin settlement of an order paid outside the gateway.

        Raises:
            PermissionDeniedError: If the actor cannot manage the event
            OrderStateError: If the order was already cancelled or expired
        """
        with db_manager.get_session() as session:
            event = load_event(session, event_id)
            if actor_role != "admin" and event.organizer_id != actor_id:
                raise PermissionDeniedError("Only the organizer can settle orders")
            order = self._load_order(session, event_id, order_id)
            if order.status in (OrderStatus.CANCELLED, OrderStatus.EXPIRED):
                raise OrderStateError(f"Order {order.order_no} is {order.status.value} and cannot be settled",
                                      {"order_id": order.id, "status": order.status.value})
            order_no = order.order_no

        return await self.mark_order_paid(order_no, f"MANUAL-{secrets.token_hex(6).upper()}")

    async def handle_payment_notification(self, notification: PaymentNotification) -> OrderTransitionResponse:
        """
        Settle an order from a signed gateway callback.

        Raises:
            PermissionDeniedError: If the signature does not verify
        """
        verified = await self.payment_provider.verify_notification(
            notification.order_no, notification.transaction_id, notification.signature
        )
        if not verified:
            logger.warning(f"Rejected payment notification for order {notification.order_no}: bad signature")
            raise PermissionDeniedError("Invalid payment notification signature")

        return await self.mark_order_paid(notification.order_no, notification.transaction_id, notification.paid_at)

    async def expire_pending_orders(self, now: Optional[datetime] = None) -> int:
        """
        Expire every pending order past its deadline.

        Returns:
            Number of orders expired
        """
        now = now or self._now()
        with db_manager.get_session() as session:
            pending = session.query(Order).filter(Order.status == OrderStatus.PENDING).all()
            stale_ids = [order.id for order in pending if order.is_expired(now)]

        expired = 0
        for order_id in stale_ids:
            if await self._cancel_order_by_id(order_id, OrderStatus.EXPIRED):
                expired += 1

        if expired:
            logger.info(f"Expired {expired} stale pending orders")
        return expired

    async def list_invites(self, event_id: int, order_id: int, user_id: int) -> List[InviteResponse]:
        """List the bonus invite codes of the user's order."""
        with db_manager.get_session() as session:
            order = self._load_order(session, event_id, order_id, user_id)
            invites = session.query(OrderInvite).filter(
                OrderInvite.order_id == order.id
            ).order_by(OrderInvite.id).all()
            return [InviteResponse.model_validate(invite) for invite in invites]

    async def redeem_invite(self, event_id: int, code: str, user_id: int,
                            redeem_data: InviteRedeem) -> RegistrationResponse:
        """
        Redeem a gift invite of a paid order into a registration.

        Raises:
            InviteError: If the code is unknown, used, or its order is unpaid
            AlreadyRegisteredError: If the redeemer already holds an active registration
        """
        await self._get_configs()

        async with get_distributed_lock(
            registration_lock_key(event_id, user_id),
            timeout=self.order_config["lock_timeout_seconds"]
        ):
            now = self._now()
            with db_manager.get_transaction_session() as session:
                invite = session.query(OrderInvite).filter(OrderInvite.code == code).first()
                if not invite or invite.order.event_id != event_id:
                    raise InviteError("Invite link is invalid or has expired")
                if invite.status != InviteStatus.PENDING:
                    raise InviteError("Invite link has already been used or is no longer valid",
                                      {"status": invite.status.value})
                if invite.order.status != OrderStatus.PAID:
                    raise InviteError("The order behind this invite has not been paid")

                registration = find_registration(session, event_id, user_id)
                if registration and registration.is_active:
                    raise AlreadyRegisteredError("You are already registered for this event",
                                                 {"status": registration.status.value})

                event = load_event(session, event_id)
                validate_extras(event, redeem_data)

                registration = apply_registration(
                    session, registration, event_id, user_id, approval_status(event), redeem_data, now,
                    ticket_type_id=invite.order.ticket_type_id,
                    order_id=invite.order_id,
                    order_invite_id=invite.id,
                )

                invite.status = InviteStatus.REDEEMED
                invite.redeemed_by = user_id
                invite.redeemed_at = now

                response = RegistrationResponse.model_validate(registration)
                session.commit()

            logger.info(f"Invite {invite.id} redeemed by user {user_id} for event {event_id}")
            await self._publish("publish_invite_redeemed", invite, event_id)
            return response


# Global order service instance
order_service = OrderService()
