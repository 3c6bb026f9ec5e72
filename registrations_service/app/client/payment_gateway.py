"""
Payment presentation for a pending order.

Scan-to-pay orders are shown as a QR code of the provider's code URL.
In-app orders hand the signed parameters to the embedding app's payment
bridge, at most once per order.
"""

import base64
from dataclasses import dataclass
from io import BytesIO
from typing import Optional
import logging

import qrcode

from app.schemas.registration import CodePayment, JsapiParams, JsapiPayment
from .notifier import Notifier
from .order_lifecycle import OrderLifecycleManager, OrderSession

logger = logging.getLogger(__name__)

BRIDGE_NOT_SUPPORTED = "bridge_not_supported"
PAY_CANCELLED = "pay_cancelled"
PAY_FAILED = "pay_failed"


class PaymentBridgeError(Exception):
    """Raised by a bridge when the in-app payment did not complete."""

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code


class InAppPaymentBridge:
    """
    Adapter over the host app's payment API.
    Implementations return when the user completed payment and raise
    PaymentBridgeError otherwise.
    """

    async def request_payment(self, params: JsapiParams):
        raise NotImplementedError


@dataclass(frozen=True)
class PaymentPresentation:
    kind: str
    code_url: Optional[str] = None
    qr_image: Optional[str] = None
    params: Optional[JsapiParams] = None
    invoked: bool = False


def render_qr_code(data: str) -> str:
    """Render data as a QR code PNG data URI."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


class PaymentGatewayAdapter:
    """Presents the payment of the manager's current order."""

    def __init__(self, manager: OrderLifecycleManager, notifier: Notifier,
                 bridge: Optional[InAppPaymentBridge] = None):
        self.manager = manager
        self.notifier = notifier
        self.bridge = bridge

    async def present(self, session: Optional[OrderSession] = None) -> PaymentPresentation:
        """
        Show the payment of a pending order.

        Args:
            session: Order to pay, defaults to the manager's current order

        Returns:
            What was presented

        Raises:
            OrderTerminatedError: If the order is no longer pending
            ValueError: If the order carries no payment parameters
        """
        session = session or self.manager.session
        if session is None:
            raise ValueError("No order to pay")
        session.ensure_pending()

        payment = session.payment
        if isinstance(payment, CodePayment):
            return PaymentPresentation(kind="code", code_url=payment.code_url,
                                       qr_image=render_qr_code(payment.code_url))

        if isinstance(payment, JsapiPayment):
            invoked = False
            if session.claim_in_app_invocation():
                invoked = True
                await self._invoke_bridge(payment.params)
            return PaymentPresentation(kind="jsapi", params=payment.params, invoked=invoked)

        raise ValueError(f"Order {session.order_no} has no payment parameters")

    async def _invoke_bridge(self, params: JsapiParams):
        if self.bridge is None:
            self.notifier.warning("Open this page in the app to pay", code=BRIDGE_NOT_SUPPORTED)
            return

        try:
            await self.bridge.request_payment(params)
        except PaymentBridgeError as e:
            logger.info(f"In-app payment did not complete: {e.code}")
            if e.code == PAY_CANCELLED:
                self.notifier.info("Payment cancelled, you can pay again before the order expires",
                                   code=PAY_CANCELLED)
            elif e.code == BRIDGE_NOT_SUPPORTED:
                self.notifier.warning("Open this page in the app to pay", code=BRIDGE_NOT_SUPPORTED)
            else:
                self.notifier.error("Payment was not completed", code=PAY_FAILED)
            return

        await self.manager.poll_once()
