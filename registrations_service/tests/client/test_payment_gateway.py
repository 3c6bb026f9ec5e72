"""
Tests for payment presentation.
"""

import base64
import pytest
from unittest.mock import AsyncMock
from datetime import datetime, timezone, timedelta

from app.client.api_client import RegistrationApiClient
from app.client.notifier import NoticeLevel, RecordingNotifier
from app.client.order_lifecycle import OrderLifecycleManager, OrderTerminatedError
from app.client.payment_gateway import (
    BRIDGE_NOT_SUPPORTED,
    PAY_CANCELLED,
    PAY_FAILED,
    InAppPaymentBridge,
    PaymentBridgeError,
    PaymentGatewayAdapter,
    render_qr_code,
)
from app.models.registration import OrderStatus
from app.schemas.registration import (
    CodePayment,
    JsapiParams,
    JsapiPayment,
    OrderCreate,
    OrderResponse,
    OrderStatusResponse,
)

EVENT_ID = 7
EXPIRES = datetime.now(timezone.utc) + timedelta(minutes=30)
PARAMS = JsapiParams(app_id="community-app", time_stamp="1700000000", nonce_str="abc",
                     package="prepay_id=wx123", pay_sign="SIGN")


def order(payment) -> OrderResponse:
    return OrderResponse(order_id=1, order_no="EVT1", total_amount=99.0, expired_at=EXPIRES, payment=payment)


class FakeBridge(InAppPaymentBridge):
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def request_payment(self, params):
        self.calls.append(params)
        if self.error:
            raise PaymentBridgeError(self.error)


@pytest.fixture
def api():
    client = AsyncMock(spec=RegistrationApiClient)
    client.get_pending_order.return_value = None
    client.get_order.return_value = OrderStatusResponse(
        id=1, order_no="EVT1", status=OrderStatus.PENDING, total_amount=99.0, expired_at=EXPIRES
    )
    return client


@pytest.fixture
def notifier():
    return RecordingNotifier()


async def start(api, notifier, payment):
    api.create_order.return_value = order(payment)
    manager = OrderLifecycleManager(api, EVENT_ID, notifier=notifier)
    await manager.resume_or_create(OrderCreate(ticket_type_id=1))
    return manager


class TestCodePayment:
    """Test scannable code presentation."""

    def test_render_qr_code(self):
        image = render_qr_code("weixin://wxpay/bizpayurl?pr=EVT1")

        assert image.startswith("data:image/png;base64,")
        assert base64.b64decode(image.split(",", 1)[1]).startswith(b"\x89PNG")

    @pytest.mark.asyncio
    async def test_code_payment_presented(self, api, notifier):
        manager = await start(api, notifier, CodePayment(code_url="weixin://wxpay/bizpayurl?pr=EVT1"))
        adapter = PaymentGatewayAdapter(manager, notifier, bridge=FakeBridge())

        presentation = await adapter.present()

        assert presentation.kind == "code"
        assert presentation.code_url == "weixin://wxpay/bizpayurl?pr=EVT1"
        assert presentation.qr_image.startswith("data:image/png;base64,")
        assert adapter.bridge.calls == []


class TestInAppPayment:
    """Test in-app bridge invocation."""

    @pytest.mark.asyncio
    async def test_bridge_invoked_once_per_order(self, api, notifier):
        manager = await start(api, notifier, JsapiPayment(params=PARAMS))
        bridge = FakeBridge()
        adapter = PaymentGatewayAdapter(manager, notifier, bridge=bridge)

        first = await adapter.present()
        second = await adapter.present()

        assert first.invoked
        assert not second.invoked
        assert bridge.calls == [PARAMS]

    @pytest.mark.asyncio
    async def test_success_polls_immediately(self, api, notifier):
        manager = await start(api, notifier, JsapiPayment(params=PARAMS))
        adapter = PaymentGatewayAdapter(manager, notifier, bridge=FakeBridge())

        await adapter.present()

        api.get_order.assert_awaited_once_with(EVENT_ID, 1)
        assert manager.session.is_pending

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,level", [
        (PAY_CANCELLED, NoticeLevel.INFO),
        (BRIDGE_NOT_SUPPORTED, NoticeLevel.WARNING),
        (PAY_FAILED, NoticeLevel.ERROR),
    ])
    async def test_bridge_failures_keep_order_pending(self, api, notifier, error, level):
        manager = await start(api, notifier, JsapiPayment(params=PARAMS))
        adapter = PaymentGatewayAdapter(manager, notifier, bridge=FakeBridge(error))

        await adapter.present()

        notice = notifier.notices[-1]
        assert notice.level == level
        assert notice.code == error
        assert manager.session.is_pending
        api.get_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_bridge(self, api, notifier):
        manager = await start(api, notifier, JsapiPayment(params=PARAMS))
        adapter = PaymentGatewayAdapter(manager, notifier)

        presentation = await adapter.present()

        assert presentation.kind == "jsapi"
        assert notifier.codes() == [BRIDGE_NOT_SUPPORTED]

    @pytest.mark.asyncio
    async def test_terminated_order_not_presented(self, api, notifier):
        manager = await start(api, notifier, JsapiPayment(params=PARAMS))
        await manager.cancel()
        adapter = PaymentGatewayAdapter(manager, notifier, bridge=FakeBridge())

        with pytest.raises(OrderTerminatedError):
            await adapter.present()
        assert adapter.bridge.calls == []

    @pytest.mark.asyncio
    async def test_order_without_payment(self, api, notifier):
        manager = await start(api, notifier, None)
        adapter = PaymentGatewayAdapter(manager, notifier)

        with pytest.raises(ValueError):
            await adapter.present()
