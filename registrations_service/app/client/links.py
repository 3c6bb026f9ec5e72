"""
Query-string contract of the registration page.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import parse_qs, quote, urlencode, urlsplit


class ConfirmationView(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"


@dataclass(frozen=True)
class RegistrationLinkParams:
    gift_code: Optional[str] = None
    invite_code: Optional[str] = None
    confirmation: Optional[ConfirmationView] = None


def _first(params, name: str) -> Optional[str]:
    values = params.get(name) or []
    for value in values:
        value = value.strip()
        if value:
            return value
    return None


def parse_registration_params(url: str) -> RegistrationLinkParams:
    """
    Read gift/invite codes and the confirmation view from a URL or query string.
    Unknown confirmation values are ignored.
    """
    query = urlsplit(url).query if "?" in url or "://" in url else url.lstrip("?")
    params = parse_qs(query)

    confirmation = None
    raw_confirmation = _first(params, "registration")
    if raw_confirmation:
        try:
            confirmation = ConfirmationView(raw_confirmation.lower())
        except ValueError:
            confirmation = None

    return RegistrationLinkParams(
        gift_code=_first(params, "gift"),
        invite_code=_first(params, "invite"),
        confirmation=confirmation,
    )


def build_gift_link(share_base_url: str, event_id: int, code: str) -> str:
    return f"{share_base_url.rstrip('/')}/events/{event_id}/register?gift={quote(code, safe='')}"


def build_confirmation_link(share_base_url: str, event_id: int, view: ConfirmationView) -> str:
    query = urlencode({"registration": ConfirmationView(view).value})
    return f"{share_base_url.rstrip('/')}/events/{event_id}?{query}"
