"""
Tests for the payment provider.
Gateway calls run against httpx.MockTransport handlers.
"""

import json
import pytest
import httpx

from app.core.errors import PaymentProviderError
from app.services.payment_provider import AUTH_SCHEME, JSAPI_ORDER_PATH, NATIVE_ORDER_PATH, PaymentProvider
from tests.conftest import PAYMENT_CONFIG


def provider_with(handler) -> PaymentProvider:
    provider = PaymentProvider(transport=httpx.MockTransport(handler))
    provider.payment_config = dict(PAYMENT_CONFIG)
    return provider


def parse_authorization(header: str) -> dict:
    scheme, _, params = header.partition(" ")
    assert scheme == AUTH_SCHEME
    fields = {}
    for item in params.split(","):
        key, _, value = item.partition("=")
        fields[key] = value.strip('"')
    return fields


class TestGatewayOrders:
    """Test order placement with the payment gateway."""

    @pytest.mark.asyncio
    async def test_native_order_posts_signed_request(self):
        """Native orders are POSTed with a signed body and return the gateway code URL."""
        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json={"code_url": "weixin://wxpay/bizpayurl?pr=gateway-issued"})

        provider = provider_with(handler)
        code_url = await provider.create_native_order("EVT1", "Meetup ticket", 9900)

        assert code_url == "weixin://wxpay/bizpayurl?pr=gateway-issued"
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == f"https://pay.test{NATIVE_ORDER_PATH}"

        body = json.loads(request.content)
        assert body == {
            "appid": "community-app",
            "mchid": "1900000109",
            "out_trade_no": "EVT1",
            "description": "Meetup ticket",
            "notify_url": PAYMENT_CONFIG["notify_url"],
            "amount": {"total": 9900, "currency": "CNY"},
        }

        auth = parse_authorization(request.headers["Authorization"])
        assert auth["mchid"] == "1900000109"
        expected = provider._sign(
            PAYMENT_CONFIG["merchant_key"], "POST", NATIVE_ORDER_PATH,
            auth["timestamp"], auth["nonce_str"], request.content.decode("utf-8"),
        )
        assert auth["signature"] == expected

    @pytest.mark.asyncio
    async def test_jsapi_order_requires_payer(self, provider):
        """In-app orders need the payer identity and use the gateway prepay id."""
        with pytest.raises(PaymentProviderError):
            await provider.create_jsapi_order("EVT1", "Meetup ticket", 9900, "")
        assert provider.gateway_requests == []

        prepay_id = await provider.create_jsapi_order("EVT1", "Meetup ticket", 9900, "openid-1")

        assert prepay_id == "wxEVT1"
        assert provider.gateway_requests[0]["payer"] == {"openid": "openid-1"}

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self, provider):
        """Without merchant credentials the gateway is never contacted."""
        provider.payment_config["merchant_id"] = ""

        with pytest.raises(PaymentProviderError) as exc_info:
            await provider.create_native_order("EVT1", "Meetup ticket", 9900)

        assert exc_info.value.details == {"missing": ["merchant_id"]}
        assert provider.gateway_requests == []

    @pytest.mark.asyncio
    async def test_gateway_rejection(self):
        """An error status from the gateway surfaces as a provider error."""
        provider = provider_with(lambda request: httpx.Response(400, json={"code": "PARAM_ERROR"}))

        with pytest.raises(PaymentProviderError) as exc_info:
            await provider.create_native_order("EVT1", "Meetup ticket", 9900)

        assert exc_info.value.details["status_code"] == 400

    @pytest.mark.asyncio
    async def test_gateway_unreachable(self):
        """Transport failures surface as a provider error."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = provider_with(handler)

        with pytest.raises(PaymentProviderError) as exc_info:
            await provider.create_jsapi_order("EVT1", "Meetup ticket", 9900, "openid-1")

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_response_without_code_url(self):
        """A success response missing the code URL is not accepted."""
        provider = provider_with(lambda request: httpx.Response(200, json={"prepay_id": "wx1"}))

        with pytest.raises(PaymentProviderError):
            await provider.create_native_order("EVT1", "Meetup ticket", 9900)

    @pytest.mark.asyncio
    async def test_non_json_response(self):
        """A body that is not JSON is not accepted."""
        provider = provider_with(lambda request: httpx.Response(200, text="<xml>ok</xml>"))

        with pytest.raises(PaymentProviderError):
            await provider.create_jsapi_order("EVT1", "Meetup ticket", 9900, "openid-1")


class TestSignatures:
    """Test in-app parameters and notification signatures."""

    @pytest.mark.asyncio
    async def test_jsapi_params_signed_deterministically(self, provider):
        """The same inputs produce the same signature."""
        first = await provider.build_jsapi_params("wx123", timestamp=1700000000, nonce="abc")
        second = await provider.build_jsapi_params("wx123", timestamp=1700000000, nonce="abc")
        other = await provider.build_jsapi_params("wx124", timestamp=1700000000, nonce="abc")

        assert first.package == "prepay_id=wx123"
        assert first.time_stamp == "1700000000"
        assert first.pay_sign == second.pay_sign
        assert first.pay_sign != other.pay_sign
        assert first.pay_sign == first.pay_sign.upper()

    @pytest.mark.asyncio
    async def test_verify_notification(self, provider):
        """Only the matching signature verifies; case does not matter."""
        signature = await provider.sign_notification("EVT1", "TX1")

        assert await provider.verify_notification("EVT1", "TX1", signature)
        assert await provider.verify_notification("EVT1", "TX1", signature.lower())
        assert not await provider.verify_notification("EVT1", "TX2", signature)
        assert not await provider.verify_notification("EVT1", "TX1", "")

    @pytest.mark.asyncio
    async def test_verify_without_secret(self):
        """Notifications are rejected when no secret is configured."""
        provider = PaymentProvider()
        provider.payment_config = {"app_id": "community-app", "notify_secret": ""}

        assert not await provider.verify_notification("EVT1", "TX1", "anything")
