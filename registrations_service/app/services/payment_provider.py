"""
Payment provider for Registrations Service.
Places native (scannable code) and in-app orders with the payment gateway,
signs in-app invocation parameters and verifies gateway settlement callbacks.
"""

import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Dict, Optional
import httpx
import logging

from app.core.config import config
from app.core.errors import PaymentProviderError
from app.schemas.registration import JsapiParams

logger = logging.getLogger(__name__)

NATIVE_ORDER_PATH = "/v3/pay/transactions/native"
JSAPI_ORDER_PATH = "/v3/pay/transactions/jsapi"
AUTH_SCHEME = "WECHATPAY2-SHA256-HMAC"


class PaymentProvider:
    """
    Gateway client used by the order service.
    Amounts are passed to the gateway in cents.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.payment_config = None
        self.transport = transport

    async def _get_configs(self):
        """Get configuration settings."""
        if not self.payment_config:
            self.payment_config = await config.get_payment_config()
        return self.payment_config

    def _sign(self, key: str, *parts: str) -> str:
        message = "".join(f"{part}\n" for part in parts)
        return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest().upper()

    def _authorization(self, payment_config: Dict[str, Any], method: str, path: str, body: str) -> str:
        """Request signature over method, path, timestamp, nonce and body."""
        timestamp = str(int(time.time()))
        nonce_str = secrets.token_hex(16)
        signature = self._sign(payment_config["merchant_key"], method, path, timestamp, nonce_str, body)
        return (
            f'{AUTH_SCHEME} mchid="{payment_config["merchant_id"]}",nonce_str="{nonce_str}",'
            f'timestamp="{timestamp}",signature="{signature}"'
        )

    async def _configured(self) -> Dict[str, Any]:
        payment_config = await self._get_configs()
        missing = [key for key in ("app_id", "merchant_id", "merchant_key", "notify_url")
                   if not payment_config.get(key)]
        if missing:
            raise PaymentProviderError("Payment gateway is not configured", {"missing": missing})
        return payment_config

    def _order_body(self, payment_config: Dict[str, Any], order_no: str, description: str,
                    amount: int, currency: str) -> Dict[str, Any]:
        return {
            "appid": payment_config["app_id"],
            "mchid": payment_config["merchant_id"],
            "out_trade_no": order_no,
            "description": description,
            "notify_url": payment_config["notify_url"],
            "amount": {"total": amount, "currency": currency},
        }

    async def _post(self, payment_config: Dict[str, Any], path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send a signed request to the gateway.

        Raises:
            PaymentProviderError: If the gateway is unreachable, rejects the request
                or answers with something other than a JSON object
        """
        payload = json.dumps(body, separators=(",", ":"), ensure_ascii=False)
        headers = {
            "Authorization": self._authorization(payment_config, "POST", path, payload),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            async with httpx.AsyncClient(
                base_url=payment_config["api_base_url"],
                timeout=payment_config.get("timeout_seconds") or 10.0,
                transport=self.transport,
            ) as client:
                response = await client.post(path, content=payload.encode("utf-8"), headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Payment gateway request {path} for order {body['out_trade_no']} failed: {e}")
            raise PaymentProviderError("Payment gateway is unreachable", {"order_no": body["out_trade_no"]}) from e

        if response.is_error:
            logger.error(f"Payment gateway rejected {path} for order {body['out_trade_no']}: "
                         f"{response.status_code} {response.text}")
            raise PaymentProviderError("Payment gateway rejected the order",
                                       {"order_no": body["out_trade_no"], "status_code": response.status_code})

        try:
            data = response.json()
        except ValueError as e:
            raise PaymentProviderError("Payment gateway returned an invalid response",
                                       {"order_no": body["out_trade_no"]}) from e
        if not isinstance(data, dict):
            raise PaymentProviderError("Payment gateway returned an invalid response",
                                       {"order_no": body["out_trade_no"]})
        return data

    async def create_native_order(self, order_no: str, description: str, amount: int,
                                  currency: str = "CNY") -> str:
        """
        Create a scannable-code payment with the gateway.

        Args:
            order_no: Merchant order number
            description: Line item shown by the gateway
            amount: Amount in cents
            currency: ISO currency code

        Returns:
            Code URL to render as a QR code

        Raises:
            PaymentProviderError: If the gateway is not configured or the order is not placed
        """
        payment_config = await self._configured()
        body = self._order_body(payment_config, order_no, description, amount, currency)

        data = await self._post(payment_config, NATIVE_ORDER_PATH, body)
        code_url = data.get("code_url")
        if not code_url:
            raise PaymentProviderError("Payment gateway returned no code URL", {"order_no": order_no})

        logger.info(f"Native payment created for order {order_no} ({amount} cents)")
        return code_url

    async def create_jsapi_order(self, order_no: str, description: str, amount: int, payer_openid: str,
                                 currency: str = "CNY") -> str:
        """
        Create an in-app payment with the gateway and return its prepay id.

        Raises:
            PaymentProviderError: If the gateway is not configured, the payer is unknown
                or the order is not placed
        """
        if not payer_openid:
            raise PaymentProviderError("Payer identity is required for in-app payment")
        payment_config = await self._configured()
        body = self._order_body(payment_config, order_no, description, amount, currency)
        body["payer"] = {"openid": payer_openid}

        data = await self._post(payment_config, JSAPI_ORDER_PATH, body)
        prepay_id = data.get("prepay_id")
        if not prepay_id:
            raise PaymentProviderError("Payment gateway returned no prepay id", {"order_no": order_no})

        logger.info(f"In-app payment created for order {order_no} ({amount} cents)")
        return prepay_id

    async def build_jsapi_params(self, prepay_id: str, timestamp: Optional[int] = None,
                                 nonce: Optional[str] = None) -> JsapiParams:
        """Sign the parameters the in-app bridge is invoked with."""
        payment_config = await self._get_configs()
        app_id = payment_config.get("app_id") or ""
        time_stamp = str(timestamp if timestamp is not None else int(time.time()))
        nonce_str = nonce or secrets.token_hex(16)
        package = f"prepay_id={prepay_id}"

        pay_sign = self._sign(payment_config.get("merchant_key") or "", app_id, time_stamp, nonce_str, package)
        return JsapiParams(
            app_id=app_id,
            time_stamp=time_stamp,
            nonce_str=nonce_str,
            package=package,
            pay_sign=pay_sign,
        )

    async def sign_notification(self, order_no: str, transaction_id: str) -> str:
        """Signature a gateway callback for this order must carry."""
        payment_config = await self._get_configs()
        return self._sign(payment_config.get("notify_secret") or "", order_no, transaction_id)

    async def verify_notification(self, order_no: str, transaction_id: str, signature: str) -> bool:
        """Check a gateway callback signature."""
        payment_config = await self._get_configs()
        if not payment_config.get("notify_secret"):
            logger.warning("Payment notification rejected: notify secret is not configured")
            return False

        expected = await self.sign_notification(order_no, transaction_id)
        return hmac.compare_digest(expected, (signature or "").upper())


# Global payment provider instance
payment_provider = PaymentProvider()
