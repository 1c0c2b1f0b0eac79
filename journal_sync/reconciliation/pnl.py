"""
Gross P&L for a reconciled round trip.

    price_diff = entry - exit   (sell)
               = exit - entry   (buy)
    gross_pnl  = round2(price_diff * quantity * multiplier)

Fees and swap are not in the order feed, so this is gross P&L.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from journal_sync.domain.models import Side

CENT = Decimal("0.01")


def round2(value: Decimal) -> Decimal:
    """Round half away from zero to cents."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def price_diff(side: Side, entry_price: Decimal, exit_price: Decimal) -> Decimal:
    if side is Side.SELL:
        return entry_price - exit_price
    return exit_price - entry_price


def gross_pnl(
    side: Optional[Side],
    entry_price: Optional[Decimal],
    exit_price: Optional[Decimal],
    quantity: Optional[Decimal],
    multiplier: Decimal,
) -> Decimal:
    """
    Compute gross P&L in USD, rounded to cents.

    Missing prices, a missing side or a zero/missing quantity give 0.00.
    """
    if entry_price is None or exit_price is None or not quantity or side is None:
        return round2(Decimal("0"))
    return round2(price_diff(side, entry_price, exit_price) * quantity * multiplier)
