# order totals: subtotal, threshold shipping, flat-rate tax
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple

from fulfillment.utils.config import Settings

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    shipping_fee: Decimal
    tax: Decimal

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.shipping_fee + self.tax


def shipping_fee_for(subtotal: Decimal, settings: Settings) -> Decimal:
    # free strictly above the threshold
    if subtotal > settings.free_shipping_threshold:
        return to_cents(Decimal(0))
    return to_cents(settings.shipping_flat_fee)


def price_lines(
    lines: Iterable[Tuple[Decimal, int]], settings: Settings
) -> PriceBreakdown:
    """Price ``(unit_price, quantity)`` pairs with the configured rules."""
    subtotal = to_cents(sum((price * qty for price, qty in lines), Decimal(0)))
    return PriceBreakdown(
        subtotal=subtotal,
        shipping_fee=shipping_fee_for(subtotal, settings),
        tax=to_cents(subtotal * settings.tax_rate),
    )
