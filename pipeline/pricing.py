"""
Order pricing.

The shipping tier is picked with a coarse city heuristic: the text before the
first comma of the delivery location is compared, case-insensitively, with the
same prefix of the warehouse location. Equal prefixes ship at the local rate,
anything else at the regional rate. No geocoding is involved, so "Austin, TX"
and "Round Rock, TX" are regional to each other.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from pipeline.state import InventoryStatus, PricingDetails, PricingResult, normalize_quantity

CENTS = Decimal("0.01")


def city_prefix(location: Optional[str]) -> str:
    """Lower-cased text before the first comma of a location."""
    return (location or "").split(",")[0].strip().lower()


def shipping_tier(delivery_location: Optional[str], warehouse_location: Optional[str]) -> str:
    """Return "local" when both locations share a city prefix, else "regional"."""
    if city_prefix(delivery_location) == city_prefix(warehouse_location):
        return "local"
    return "regional"


def calculate_total_cost(
    quantity: Any, inventory: InventoryStatus, delivery_location: Optional[str]
) -> PricingResult:
    """
    Price an order against the stock record that will fulfil it.

    Args:
        quantity: Requested quantity, an integer or a string like "50 units"
        inventory: Inventory status of the fulfilling warehouse
        delivery_location: Where the order ships to

    Returns:
        PricingResult with total_cost == subtotal + shipping_cost

    Raises:
        QuantityError: If the quantity cannot be read as a count
    """
    numeric_quantity = normalize_quantity(quantity)
    tier = shipping_tier(delivery_location, inventory.warehouse_location)
    shipping_cost = getattr(inventory.shipping_price, tier)

    subtotal = (Decimal(numeric_quantity) * inventory.unit_price).quantize(CENTS, rounding=ROUND_HALF_UP)
    total_cost = subtotal + shipping_cost

    return PricingResult(
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        total_cost=total_cost,
        pricing_details=PricingDetails(
            unit_price=inventory.unit_price,
            quantity=numeric_quantity,
            shipping_type=tier,
            warehouse_location=inventory.warehouse_location,
            delivery_location=delivery_location or "",
            shipping_notes=(
                f"Locations determined to be {'in the same' if tier == 'local' else 'in different'} region(s)"
            ),
        ),
    )
