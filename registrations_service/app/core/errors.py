"""
Error taxonomy for Registrations Service.
Domain errors carry a stable error code and the HTTP status they map to.
"""

from typing import Any, Dict, Optional


class RegistrationError(Exception):
    """Base class for registration and order errors."""

    error_code = "REGISTRATION_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class EventNotFoundError(RegistrationError):
    error_code = "EVENT_NOT_FOUND"
    status_code = 404


class RegistrationClosedError(RegistrationError):
    error_code = "REGISTRATION_CLOSED"


class AlreadyRegisteredError(RegistrationError):
    error_code = "ALREADY_REGISTERED"
    status_code = 409


class SoldOutError(RegistrationError):
    error_code = "SOLD_OUT"
    status_code = 409


class InvalidTicketError(RegistrationError):
    error_code = "INVALID_TICKET"


class OrderNotFoundError(RegistrationError):
    error_code = "ORDER_NOT_FOUND"
    status_code = 404


class OrderStateError(RegistrationError):
    error_code = "ORDER_STATE_INVALID"


class PaymentIdentityRequiredError(RegistrationError):
    """The payer has no payment identity bound for in-app payment."""

    error_code = "PAYMENT_IDENTITY_REQUIRED"


class PaymentProviderError(RegistrationError):
    error_code = "PAYMENT_PROVIDER_ERROR"
    status_code = 502


class InviteError(RegistrationError):
    error_code = "INVITE_INVALID"


class PermissionDeniedError(RegistrationError):
    error_code = "PERMISSION_DENIED"
    status_code = 403
