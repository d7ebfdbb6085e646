# portfolio_tracker/services/ledger/costing.py
"""
Weighted-average cost arithmetic.

Pure functions over Decimal; no rounding. A position carries one average
cost per unit. Buys blend the new price into it, weighted by quantity.
Sells leave it untouched and realize the difference between the sale price
and the average on the units sold.

    new_avg = (old_qty * old_avg + qty * price) / (old_qty + qty)
    realized = qty * (price - avg)
"""

from dataclasses import dataclass
from decimal import Decimal

# Remaining quantities at or below this are treated as a closed position
POSITION_TOLERANCE = Decimal("1e-8")

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def weighted_average(
        old_qty: Decimal,
        old_avg: Decimal | None,
        qty: Decimal,
        price: Decimal | None,
) -> Decimal | None:
    """
    Blend `qty` units at `price` into an existing average.

    A missing side (None) is ignored: with no previous average the new
    price is taken as is, and with no new price the old average stays.
    """
    if price is None:
        return old_avg
    if old_avg is None or old_qty <= ZERO:
        return price

    total_qty = old_qty + qty
    if total_qty <= ZERO:
        return price
    return (old_qty * old_avg + qty * price) / total_qty


@dataclass(frozen=True)
class BuyOutcome:
    quantity: Decimal
    avg_cost_usd: Decimal
    avg_cost_local: Decimal | None
    avg_fx_rate: Decimal | None


def apply_buy(
        old_qty: Decimal,
        old_avg_usd: Decimal,
        old_avg_local: Decimal | None,
        old_avg_fx: Decimal | None,
        qty: Decimal,
        price_usd: Decimal,
        price_local: Decimal | None = None,
        fx_rate: Decimal | None = None,
) -> BuyOutcome:
    """USD cost, local cost and FX rate are averaged independently."""
    return BuyOutcome(
        quantity=old_qty + qty,
        avg_cost_usd=weighted_average(old_qty, old_avg_usd, qty, price_usd),
        avg_cost_local=weighted_average(old_qty, old_avg_local, qty, price_local),
        avg_fx_rate=weighted_average(old_qty, old_avg_fx, qty, fx_rate),
    )


@dataclass(frozen=True)
class SellOutcome:
    remaining_quantity: Decimal
    cost_basis_sold: Decimal
    proceeds: Decimal
    realized_gain: Decimal
    realized_gain_pct: Decimal
    closes_position: bool


def apply_sell(held_qty: Decimal, avg_cost: Decimal, qty: Decimal, price: Decimal) -> SellOutcome:
    """
    Realize `qty` units at `price` against the average cost.

    The caller checks `qty <= held_qty` first; this function does not.
    """
    remaining = held_qty - qty
    cost_basis = qty * avg_cost
    proceeds = qty * price
    realized = proceeds - cost_basis
    realized_pct = realized / cost_basis * HUNDRED if cost_basis else ZERO
    return SellOutcome(
        remaining_quantity=remaining,
        cost_basis_sold=cost_basis,
        proceeds=proceeds,
        realized_gain=realized,
        realized_gain_pct=realized_pct,
        closes_position=remaining <= POSITION_TOLERANCE,
    )

