"""
Ticket pricing shared by the order service and the registration client.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from app.core.errors import InvalidTicketError

CENT = Decimal("0.01")


@dataclass(frozen=True)
class TicketPricing:
    """Resolved price for a ticket type and quantity."""

    unit_price: Decimal
    total_amount: Decimal
    quantity: int
    tier: Optional[Any] = None

    @property
    def is_paid(self) -> bool:
        return self.total_amount > 0


def to_decimal(value) -> Decimal:
    """Money value as a two-place Decimal; None counts as free."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def active_tiers(ticket_type) -> list:
    """Active price tiers of a ticket type, ordered by quantity."""
    tiers = getattr(ticket_type, "price_tiers", None) or []
    return sorted(
        (tier for tier in tiers if getattr(tier, "is_active", True)),
        key=lambda tier: tier.quantity,
    )


def find_tier(ticket_type, quantity: int):
    """Return the active tier whose bucket matches the quantity, if any."""
    for tier in active_tiers(ticket_type):
        if tier.quantity == quantity:
            return tier
    return None


def resolve_ticket_pricing(ticket_type, quantity: int) -> TicketPricing:
    """
    Price a ticket type for the given quantity.

    A tier whose bucket equals the quantity sets the total; otherwise a
    single ticket uses the base price.

    Args:
        ticket_type: Ticket type (model or schema) with price and price_tiers
        quantity: Number of tickets

    Returns:
        TicketPricing with unit and total amounts

    Raises:
        InvalidTicketError: If no tier covers a quantity above one
    """
    if quantity < 1:
        raise InvalidTicketError("Quantity must be at least 1", {"quantity": quantity})

    tier = find_tier(ticket_type, quantity)
    if tier is not None:
        total = to_decimal(tier.price)
        unit = (total / quantity).quantize(CENT, rounding=ROUND_HALF_UP)
        return TicketPricing(unit_price=unit, total_amount=total, quantity=quantity, tier=tier)

    if quantity == 1:
        price = to_decimal(ticket_type.price)
        return TicketPricing(unit_price=price, total_amount=price, quantity=1)

    raise InvalidTicketError(
        f"Unsupported ticket quantity: {quantity}",
        {"ticket_type_id": getattr(ticket_type, "id", None), "quantity": quantity},
    )
