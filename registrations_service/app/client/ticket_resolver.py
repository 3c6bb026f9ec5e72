"""
Ticket type, price tier and quantity resolution for the registration form.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Sequence, Tuple

from app.core.errors import InvalidTicketError
from app.services.pricing import active_tiers, find_tier, resolve_ticket_pricing, to_decimal


class TicketSelectionError(str, Enum):
    SELECT_TICKET_TYPE = "select_ticket_type"
    SELECT_TIER_QUANTITY = "select_tier_quantity"


@dataclass(frozen=True)
class TicketSelection:
    available: Tuple[Any, ...] = ()
    ticket: Optional[Any] = None
    tier: Optional[Any] = None
    quantity: int = 1
    is_paid_ticket: bool = False
    unit_price: Decimal = Decimal("0.00")
    total_amount: Decimal = Decimal("0.00")
    error: Optional[TicketSelectionError] = None

    @property
    def ticket_type_id(self) -> Optional[int]:
        return self.ticket.id if self.ticket is not None else None

    @property
    def is_valid(self) -> bool:
        return self.error is None


def is_ticket_available(ticket: Any) -> bool:
    """Active and under its inventory limit."""
    if not getattr(ticket, "is_active", True):
        return False
    max_quantity = getattr(ticket, "max_quantity", None)
    return max_quantity is None or (getattr(ticket, "current_quantity", 0) or 0) < max_quantity


def available_tickets(ticket_types: Optional[Sequence[Any]]) -> Tuple[Any, ...]:
    return tuple(ticket for ticket in ticket_types or () if is_ticket_available(ticket))


def _coerce_quantity(ticket: Any, quantity: int) -> int:
    tiers = active_tiers(ticket)
    if not tiers:
        return 1
    if find_tier(ticket, quantity) is not None:
        return quantity
    # Tier-only tickets snap to their smallest bucket
    if to_decimal(getattr(ticket, "price", None)) <= 0:
        return tiers[0].quantity
    return quantity


def resolve_tickets(
    ticket_types: Optional[Sequence[Any]],
    selected_ticket_id: Optional[int] = None,
    selected_quantity: int = 1,
    disable_selection: bool = False
) -> TicketSelection:
    """
    Resolve the ticket a registrant is buying.

    No available ticket means the free, ticketless path. A single available
    ticket is always selected. A selection that is no longer available is
    cleared, never replaced. Problems are reported in `error`.

    Args:
        ticket_types: Event ticket catalog
        selected_ticket_id: Ticket the user picked, if any
        selected_quantity: Quantity the user picked
        disable_selection: Skip selection entirely (gift redemption)
    """
    available = available_tickets(ticket_types)
    if disable_selection or not available:
        return TicketSelection(available=available)

    if len(available) == 1:
        ticket = available[0]
    else:
        ticket = next((candidate for candidate in available if candidate.id == selected_ticket_id), None)
        if ticket is None:
            return TicketSelection(available=available, error=TicketSelectionError.SELECT_TICKET_TYPE)

    quantity = _coerce_quantity(ticket, max(1, selected_quantity or 1))
    tier = find_tier(ticket, quantity)

    if active_tiers(ticket) and tier is None:
        return TicketSelection(
            available=available,
            ticket=ticket,
            quantity=quantity,
            error=TicketSelectionError.SELECT_TIER_QUANTITY,
        )

    try:
        pricing = resolve_ticket_pricing(ticket, quantity)
    except InvalidTicketError:
        return TicketSelection(
            available=available,
            ticket=ticket,
            quantity=quantity,
            error=TicketSelectionError.SELECT_TIER_QUANTITY,
        )

    return TicketSelection(
        available=available,
        ticket=ticket,
        tier=tier,
        quantity=quantity,
        is_paid_ticket=pricing.is_paid,
        unit_price=pricing.unit_price,
        total_amount=pricing.total_amount,
    )
