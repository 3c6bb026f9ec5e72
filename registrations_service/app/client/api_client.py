"""
HTTP client for the registration and order API.
Parses responses back into the service's pydantic schemas and turns
failures into ApiError with a user-facing message.
"""

from http import HTTPStatus
from typing import Any, Dict, List, Optional
import httpx
import logging

from app.core.config import config
from app.schemas.registration import (
    EventResponse,
    InviteRedeem,
    InviteResponse,
    OrderCreate,
    OrderResponse,
    OrderStatusResponse,
    OrderTransitionResponse,
    RegistrationCreate,
    RegistrationResponse,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong, please try again later"
NETWORK_ERROR_CODE = "NETWORK_ERROR"
PAYMENT_IDENTITY_REQUIRED = "PAYMENT_IDENTITY_REQUIRED"

# Error codes whose remediation is known to the client
ERROR_CODE_MESSAGES = {
    PAYMENT_IDENTITY_REQUIRED: "Link your payment account before paying in the app",
    "ALREADY_REGISTERED": "You are already registered for this event",
    "SOLD_OUT": "Tickets are sold out",
    "REGISTRATION_CLOSED": "Registration for this event is closed",
}

MESSAGE_KEYS = ("error_message", "message", "error", "detail")


class ApiError(Exception):
    """Failed API call carrying the most specific user-facing message."""

    def __init__(self, status_code: Optional[int], error_code: Optional[str], message: str,
                 payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.payload = payload

    @property
    def is_network_error(self) -> bool:
        return self.error_code == NETWORK_ERROR_CODE


class PaymentIdentityRequiredError(ApiError):
    """In-app payment needs a linked payment identity first."""


def _nested_message(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in MESSAGE_KEYS + ("msg",):
            message = _nested_message(value.get(key))
            if message:
                return message
    if isinstance(value, list):
        for item in value:
            message = _nested_message(item)
            if message:
                return message
    return None


def extract_error_code(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        code = payload.get("error_code") or payload.get("code")
        if isinstance(code, str) and code:
            return code
    return None


def resolve_error_message(
    payload: Any,
    status_code: Optional[int] = None,
    reason_phrase: Optional[str] = None,
    fallback: str = GENERIC_ERROR_MESSAGE
) -> str:
    """
    Pick the user-facing message for a failed response.

    Precedence: known structured error code, then a message field of the
    payload (error_message, message, error, detail), then the HTTP reason
    phrase, then the fallback.
    """
    code = extract_error_code(payload)
    if code in ERROR_CODE_MESSAGES:
        return ERROR_CODE_MESSAGES[code]

    if isinstance(payload, dict):
        for key in MESSAGE_KEYS:
            message = _nested_message(payload.get(key))
            if message:
                return message

    if reason_phrase:
        return reason_phrase
    if status_code:
        try:
            return HTTPStatus(status_code).phrase
        except ValueError:
            pass
    return fallback


class RegistrationApiClient:
    """
    Async client for the registrations API.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        user_agent: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if user_agent:
            headers["User-Agent"] = user_agent

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    async def from_config(cls, token: Optional[str] = None, **kwargs) -> "RegistrationApiClient":
        """Build a client from the configured base URL and timeout."""
        client_config = await config.get_client_config()
        kwargs.setdefault("timeout", client_config["request_timeout_seconds"])
        return cls(client_config["base_url"], token=token, **kwargs)

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _error(self, response: httpx.Response, payload: Any) -> ApiError:
        code = extract_error_code(payload)
        message = resolve_error_message(payload, response.status_code, response.reason_phrase)
        error_class = PaymentIdentityRequiredError if code == PAYMENT_IDENTITY_REQUIRED else ApiError
        return error_class(response.status_code, code, message, payload)

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
                       allow_not_found: bool = False) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise ApiError(None, NETWORK_ERROR_CODE, GENERIC_ERROR_MESSAGE) from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if allow_not_found and response.status_code == 404:
            return None
        if response.is_error:
            raise self._error(response, payload)
        if isinstance(payload, dict) and payload.get("success") is False:
            raise self._error(response, payload)

        return payload.get("data") if isinstance(payload, dict) else None

    async def get_event(self, event_id: int) -> EventResponse:
        data = await self._request("GET", f"/events/{event_id}")
        return EventResponse.model_validate(data)

    async def get_my_registration(self, event_id: int) -> Optional[RegistrationResponse]:
        data = await self._request("GET", f"/events/{event_id}/registration")
        return RegistrationResponse.model_validate(data) if data else None

    async def register(self, event_id: int, payload: RegistrationCreate) -> RegistrationResponse:
        data = await self._request("POST", f"/events/{event_id}/register",
                                   json=payload.model_dump(mode="json", exclude_none=True))
        return RegistrationResponse.model_validate(data)

    async def get_pending_order(self, event_id: int) -> Optional[OrderResponse]:
        """Resume lookup; None when the user has no live pending order."""
        data = await self._request("GET", f"/events/{event_id}/orders/pending", allow_not_found=True)
        return OrderResponse.model_validate(data) if data else None

    async def create_order(self, event_id: int, payload: OrderCreate) -> OrderResponse:
        data = await self._request("POST", f"/events/{event_id}/orders",
                                   json=payload.model_dump(mode="json", exclude_none=True))
        return OrderResponse.model_validate(data)

    async def get_order(self, event_id: int, order_id: int) -> OrderStatusResponse:
        data = await self._request("GET", f"/events/{event_id}/orders/{order_id}")
        return OrderStatusResponse.model_validate(data)

    async def cancel_order(self, event_id: int, order_id: int) -> OrderTransitionResponse:
        data = await self._request("POST", f"/events/{event_id}/orders/{order_id}/cancel")
        return OrderTransitionResponse.model_validate(data)

    async def list_invites(self, event_id: int, order_id: int) -> List[InviteResponse]:
        data = await self._request("GET", f"/events/{event_id}/orders/{order_id}/invites")
        return [InviteResponse.model_validate(item) for item in data or []]

    async def redeem_invite(self, event_id: int, code: str, payload: InviteRedeem) -> RegistrationResponse:
        data = await self._request("POST", f"/events/{event_id}/orders/invites/{code}/redeem",
                                   json=payload.model_dump(mode="json", exclude_none=True))
        return RegistrationResponse.model_validate(data)
