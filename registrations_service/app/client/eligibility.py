"""
Registration eligibility for an event as seen by one viewer at one instant.

Pure functions: nothing here performs I/O or raises on bad input. Dates
that cannot be parsed count as already passed.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Tuple


class RegistrationMessage(str, Enum):
    """Status message shown next to the register action."""
    LOGIN_REQUIRED = "login_required"
    EXTERNAL_EVENT = "external_event"
    REGISTERED = "registered"
    PENDING_APPROVAL = "pending_approval"
    WAITLISTED = "waitlisted"
    REJECTED = "rejected"
    PAYMENT_PENDING = "payment_pending"
    ENDED = "ended"
    DEADLINE_PASSED = "deadline_passed"
    FULL = "full"
    NOT_PUBLISHED = "not_published"
    OPEN = "open"


EXISTING_REGISTRATION_MESSAGES = {
    "approved": RegistrationMessage.REGISTERED,
    "pending": RegistrationMessage.PENDING_APPROVAL,
    "waitlisted": RegistrationMessage.WAITLISTED,
    "rejected": RegistrationMessage.REJECTED,
    "pending_payment": RegistrationMessage.PAYMENT_PENDING,
}

_MALFORMED = object()


@dataclass(frozen=True)
class EligibilityResult:
    can_register: bool
    message: RegistrationMessage
    blockers: Tuple[RegistrationMessage, ...] = ()
    is_ended: bool = False
    is_deadline_passed: bool = False
    is_full: bool = False
    has_active_registration: bool = False
    can_resume_payment: bool = False


def _value(obj: Any, name: str, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _status(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(getattr(value, "value", value)).lower()


def parse_datetime(value: Any):
    """
    Normalize a datetime or ISO string to an aware UTC datetime.

    Returns None when unset and a sentinel when the value is malformed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return _MALFORMED
    else:
        return _MALFORMED

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _has_passed(value: Any, now: datetime) -> bool:
    parsed = parse_datetime(value)
    if parsed is None:
        return False
    if parsed is _MALFORMED:
        return True
    return now >= parsed


def is_event_ended(event: Any, now: datetime) -> bool:
    """Ended once the end time has passed or the event is completed, whichever comes first."""
    return _status(_value(event, "status")) == "completed" or _has_passed(_value(event, "end_time"), now)


def is_deadline_passed(event: Any, now: datetime) -> bool:
    return _has_passed(_value(event, "registration_deadline"), now)


def is_event_full(event: Any, registration_count: Optional[int]) -> bool:
    max_attendees = _value(event, "max_attendees")
    return max_attendees is not None and (registration_count or 0) >= max_attendees


def evaluate_eligibility(
    event: Any,
    registration_count: Optional[int],
    viewer_id: Optional[int],
    existing_registration: Any = None,
    now: Optional[datetime] = None
) -> EligibilityResult:
    """
    Decide whether the viewer may register now, and which status to show.

    can_register requires every gate to be clear; the message is the first
    match of: no identity, external event, existing registration (by its
    status), ended, deadline passed, full, not published, open.

    Args:
        event: Event facts (schema, model or dict)
        registration_count: Live registration count of the event, None when unknown
        viewer_id: Viewer identity, None when anonymous
        existing_registration: Viewer's registration for the event, if any
        now: Evaluation instant, defaults to the current UTC time
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    registration_status = _status(_value(existing_registration, "status")) if existing_registration else None
    has_active_registration = registration_status is not None and registration_status != "cancelled"

    external = bool(_value(event, "is_external_event", False))
    published = _status(_value(event, "status")) == "published"
    ended = is_event_ended(event, now)
    deadline_passed = is_deadline_passed(event, now)
    full = is_event_full(event, registration_count)

    existing_message = None
    if has_active_registration:
        existing_message = EXISTING_REGISTRATION_MESSAGES.get(registration_status, RegistrationMessage.REGISTERED)

    candidates = (
        (viewer_id is None, RegistrationMessage.LOGIN_REQUIRED),
        (external, RegistrationMessage.EXTERNAL_EVENT),
        (has_active_registration, existing_message),
        (ended, RegistrationMessage.ENDED),
        (deadline_passed, RegistrationMessage.DEADLINE_PASSED),
        (full, RegistrationMessage.FULL),
        (not published, RegistrationMessage.NOT_PUBLISHED),
    )
    blockers = tuple(message for blocked, message in candidates if blocked)

    return EligibilityResult(
        can_register=not blockers,
        message=blockers[0] if blockers else RegistrationMessage.OPEN,
        blockers=blockers,
        is_ended=ended,
        is_deadline_passed=deadline_passed,
        is_full=full,
        has_active_registration=has_active_registration,
        can_resume_payment=(registration_status == "pending_payment" and viewer_id is not None
                            and not external and not ended),
    )
