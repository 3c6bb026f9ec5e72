"""
Client-side lifecycle of a payment order.

An OrderSession is the per-order state machine: it starts pending and moves
to exactly one of paid, cancelled or expired. Every transition is guarded by
the pending precondition, so the poll loop, the countdown and explicit user
actions can race without applying a transition twice. The manager owns the
two loops (status poll and countdown tick) as asyncio tasks and never
decides an order is paid on its own; it only reacts to the server.
"""

import asyncio
import inspect
import math
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional
import logging

from app.core.config import config
from app.models.registration import OrderStatus
from app.schemas.registration import (
    InviteResponse,
    OrderCreate,
    OrderResponse,
    OrderStatusResponse,
    PaymentParams,
    RegistrationResponse,
)
from .api_client import ApiError, RegistrationApiClient
from .notifier import LoggingNotifier, Notifier

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0
DEFAULT_TICK_INTERVAL = 1.0
DEFAULT_FAILURE_THRESHOLD = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderTerminatedError(Exception):
    """The order left pending; the flow has to restart from ticket selection."""

    def __init__(self, order_id: int, status: OrderStatus):
        super().__init__(f"Order {order_id} is {status.value}")
        self.order_id = order_id
        self.status = status


class OrderSession:
    """State of one payment order, scoped to that order's lifetime."""

    def __init__(self, event_id: int, order: OrderResponse):
        self.event_id = event_id
        self.order_id = order.order_id
        self.order_no = order.order_no
        self.total_amount = order.total_amount
        self.quantity = order.quantity
        self.payment: Optional[PaymentParams] = order.payment
        self.is_existing = order.is_existing
        self.expired_at = order.expired_at if order.expired_at.tzinfo else order.expired_at.replace(tzinfo=timezone.utc)

        self.status = OrderStatus.PENDING
        self.registration: Optional[RegistrationResponse] = None
        self.invites: Optional[List[InviteResponse]] = None

        self.in_app_invoked = False
        self.cancel_requested = False
        self.consecutive_failures = 0
        self.failure_reported = False

    def __repr__(self):
        return f"<OrderSession(order_id={self.order_id}, status='{self.status.value}')>"

    @property
    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, math.ceil((self.expired_at - now).total_seconds()))

    def ensure_pending(self):
        if self.is_terminal:
            raise OrderTerminatedError(self.order_id, self.status)

    def mark_paid(self, registration: Optional[RegistrationResponse] = None) -> bool:
        """pending -> paid. Returns False when the order already left pending."""
        if not self.is_pending:
            return False
        self.status = OrderStatus.PAID
        self.registration = registration
        return True

    def mark_cancelled(self, status: OrderStatus = OrderStatus.CANCELLED) -> bool:
        """pending -> cancelled/expired. Returns False when the order already left pending."""
        if status not in (OrderStatus.CANCELLED, OrderStatus.EXPIRED):
            raise ValueError(f"Not a cancellation status: {status}")
        if not self.is_pending:
            return False
        self.status = status
        return True

    def claim_in_app_invocation(self) -> bool:
        if self.in_app_invoked or not self.is_pending:
            return False
        self.in_app_invoked = True
        return True

    def claim_cancel_request(self) -> bool:
        if self.cancel_requested:
            return False
        self.cancel_requested = True
        return True

    def record_poll_failure(self) -> int:
        self.consecutive_failures += 1
        return self.consecutive_failures

    def record_poll_success(self):
        self.consecutive_failures = 0
        self.failure_reported = False


class OrderLifecycleManager:
    """
    Drives one event's payment order: resume-or-create, polling, countdown
    expiry and cancellation.

    Usage:
        async with OrderLifecycleManager(api, event_id) as manager:
            await manager.resume_or_create(order_request)
            manager.start()
            await manager.wait_until_settled()
    """

    def __init__(
        self,
        api: RegistrationApiClient,
        event_id: int,
        notifier: Optional[Notifier] = None,
        on_paid: Optional[Callable[[OrderSession], Any]] = None,
        on_terminated: Optional[Callable[[OrderSession], Any]] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        clock: Callable[[], datetime] = utcnow
    ):
        self.api = api
        self.event_id = event_id
        self.notifier = notifier or LoggingNotifier()
        self.on_paid = on_paid
        self.on_terminated = on_terminated
        self.poll_interval = poll_interval
        self.tick_interval = tick_interval
        self.failure_threshold = failure_threshold
        self.clock = clock

        self.session: Optional[OrderSession] = None
        self._tasks: List[asyncio.Task] = []
        self._settled = asyncio.Event()
        self._closed = False

    @classmethod
    async def from_config(cls, api: RegistrationApiClient, event_id: int, **kwargs) -> "OrderLifecycleManager":
        """Build a manager with the configured intervals and failure threshold."""
        client_config = await config.get_client_config()
        kwargs.setdefault("poll_interval", client_config["poll_interval_seconds"])
        kwargs.setdefault("tick_interval", client_config["tick_interval_seconds"])
        kwargs.setdefault("failure_threshold", client_config["poll_failure_threshold"])
        return cls(api, event_id, **kwargs)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _require_session(self) -> OrderSession:
        if self.session is None:
            raise RuntimeError("No order session; call resume_or_create first")
        return self.session

    def _adopt(self, order: OrderResponse) -> OrderSession:
        self.session = OrderSession(self.event_id, order)
        self._settled.clear()
        return self.session

    async def resume(self) -> Optional[OrderSession]:
        """Adopt the user's live pending order, if the server has one."""
        pending = await self.api.get_pending_order(self.event_id)
        if pending is None:
            return None
        await self._stop_loops()
        self._adopt(pending)
        logger.info(f"Resumed pending order {pending.order_no} for event {self.event_id}")
        return self.session

    async def resume_or_create(self, order_request: OrderCreate) -> OrderSession:
        """
        Adopt a pending order (keeping its expiry) or create a new one.

        Args:
            order_request: Ticket, quantity and registration payload

        Returns:
            The session of the adopted or created order

        Raises:
            ApiError: If the lookup or creation fails
        """
        session = await self.resume()
        if session is not None:
            return session

        order = await self.api.create_order(self.event_id, order_request)
        await self._stop_loops()
        self._adopt(order)
        logger.info(f"Order {order.order_no} {'resumed' if order.is_existing else 'created'} "
                    f"for event {self.event_id}, expires at {order.expired_at.isoformat()}")
        return self.session

    def start(self):
        """Start the poll loop and the countdown for the current order."""
        session = self._require_session()
        if self._closed:
            raise RuntimeError("Lifecycle manager is closed")
        self._tasks = [task for task in self._tasks if not task.done()]
        if self._tasks or not session.is_pending:
            return

        self._tasks = [
            asyncio.create_task(self._poll_loop(session), name=f"order-{session.order_id}-poll"),
            asyncio.create_task(self._tick_loop(session), name=f"order-{session.order_id}-tick"),
        ]
        for task in self._tasks:
            task.add_done_callback(self._loop_done)
        logger.info(f"Started polling order {session.order_no}")

    def _loop_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Order loop {task.get_name()} stopped: {error!r}")

    async def _poll_loop(self, session: OrderSession):
        while not self._closed and session.is_pending:
            await asyncio.sleep(self.poll_interval)
            if self._closed or not session.is_pending:
                break
            try:
                await self.poll_once()
            except Exception as e:
                logger.exception(f"Handling status of order {session.order_no} failed")
                if session.is_pending:
                    self._report_poll_failure(session, str(e))

    async def _tick_loop(self, session: OrderSession):
        while not self._closed and session.is_pending:
            try:
                await self.tick()
            except Exception:
                logger.exception(f"Countdown of order {session.order_no} failed")
            if self._closed or not session.is_pending:
                break
            await asyncio.sleep(self.tick_interval)

    async def poll_once(self) -> OrderStatus:
        """
        Fetch the order status once and apply it.
        Failures are reported, never raised; polling carries on.
        """
        session = self._require_session()
        if not session.is_pending:
            return session.status

        try:
            status_response = await self.api.get_order(self.event_id, session.order_id)
        except ApiError as e:
            self._report_poll_failure(session, e.message)
            return session.status
        except Exception as e:
            logger.exception(f"Unexpected status response for order {session.order_no}")
            self._report_poll_failure(session, str(e) or type(e).__name__)
            return session.status

        session.record_poll_success()
        await self._apply_status(session, status_response)
        return session.status

    def _report_poll_failure(self, session: OrderSession, message: str):
        failures = session.record_poll_failure()
        logger.warning(f"Polling order {session.order_no} failed ({failures} in a row): {message}")
        if failures == 1:
            self.notifier.warning("Checking payment status, connection is unstable", code="poll_failed")
        elif failures >= self.failure_threshold and not session.failure_reported:
            session.failure_reported = True
            self.notifier.error(f"Unable to check payment status: {message}", code="poll_failed_repeatedly")

    async def _apply_status(self, session: OrderSession, status_response: OrderStatusResponse):
        if status_response.status == OrderStatus.PAID:
            if session.mark_paid(status_response.registration):
                await self._handle_paid(session)
        elif status_response.status in (OrderStatus.CANCELLED, OrderStatus.EXPIRED):
            if session.mark_cancelled(status_response.status):
                logger.info(f"Order {session.order_no} reported {status_response.status.value} by the server")
                self.notifier.warning("The order is no longer payable, please select a ticket again",
                                      code=f"order_{status_response.status.value}")
                await self._handle_terminated(session)

    async def _handle_paid(self, session: OrderSession):
        logger.info(f"Order {session.order_no} paid")
        self.notifier.success("Payment successful", code="payment_succeeded")

        try:
            if session.quantity > 1:
                try:
                    session.invites = await self.api.list_invites(self.event_id, session.order_id)
                except ApiError as e:
                    logger.warning(f"Loading invites of order {session.order_no} failed: {e.message}")
                    self.notifier.warning("Invite codes could not be loaded yet", code="invites_unavailable")

            await self._run_callback(self.on_paid, session)
        finally:
            self._finish()

    async def _handle_terminated(self, session: OrderSession):
        try:
            await self._run_callback(self.on_terminated, session)
        finally:
            self._finish()

    async def _run_callback(self, callback, session: OrderSession):
        if callback is None:
            return
        result = callback(session)
        if inspect.isawaitable(result):
            await result

    async def tick(self) -> int:
        """
        Recompute the remaining time; at zero a pending order is expired
        locally and cancelled on the server once.

        Returns:
            Remaining whole seconds
        """
        session = self._require_session()
        remaining = session.remaining_seconds(self.clock())
        if remaining <= 0 and session.is_pending:
            await self._terminate(session, OrderStatus.EXPIRED)
        return remaining

    async def cancel(self) -> bool:
        """
        Cancel the current order on the user's request.

        Returns:
            True if this call cancelled the order
        """
        session = self._require_session()
        return await self._terminate(session, OrderStatus.CANCELLED)

    async def _terminate(self, session: OrderSession, status: OrderStatus) -> bool:
        if not session.mark_cancelled(status):
            return False

        logger.info(f"Order {session.order_no} {status.value} locally")
        if status == OrderStatus.EXPIRED:
            self.notifier.warning("The order has expired, please select a ticket again", code="order_expired")
        else:
            self.notifier.info("Order cancelled", code="order_cancelled")

        if session.claim_cancel_request():
            try:
                result = await self.api.cancel_order(self.event_id, session.order_id)
                if result.status == OrderStatus.PAID:
                    logger.warning(f"Order {session.order_no} was already paid when cancelled")
                    self.notifier.info("Payment was already completed, refresh to see your registration",
                                       code="order_already_paid")
            except ApiError as e:
                logger.warning(f"Cancel request for order {session.order_no} failed: {e.message}")

        await self._handle_terminated(session)
        return True

    def remaining_seconds(self) -> int:
        return self._require_session().remaining_seconds(self.clock())

    async def wait_until_settled(self, timeout: Optional[float] = None) -> OrderStatus:
        """Wait until the order leaves pending."""
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self._require_session().status

    def _finish(self):
        self._settled.set()
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

    async def _stop_loops(self):
        """Cancel the loops of the current order and wait for them to end."""
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        self._tasks = []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self):
        """Stop every loop of this flow. The order itself is left as is."""
        self._closed = True
        await self._stop_loops()
        if self.session is not None:
            logger.info(f"Stopped tracking order {self.session.order_no}")

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)
