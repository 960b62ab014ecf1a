"""Fold every tracked position into portfolio-wide totals."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from tradebook.position import Position, percent
from tradebook.trade import Price

ZERO = Decimal(0)


@dataclass(frozen=True, slots=True)
class PortfolioTotals:
    total_value: Price = ZERO
    total_realized_pnl: Price = ZERO
    total_unrealized_pnl: Price = ZERO
    total_commission: Price = ZERO
    total_pnl: Price = ZERO
    total_pnl_percent: Decimal = ZERO

    # cost basis of everything still open (the percent denominator)
    total_cost: Price = ZERO
    open_positions: int = 0


def fold(positions: Iterable[Position]) -> PortfolioTotals:
    """Reduce open AND closed positions into totals.

    Value, unrealized P&L and open cost only come from open positions, while
    realized P&L and commission come from every position ever traded.

    Positions are folded in symbol order so the same set of positions always
    produces the same totals regardless of how the caller stored them."""
    value = realized = unrealized = commission = cost = ZERO
    count = 0

    for p in sorted(positions, key=lambda p: p.symbol):
        realized += p.realized_pnl
        commission += p.total_commission

        if p.is_open:
            value += p.current_value
            unrealized += p.unrealized_pnl
            cost += p.total_cost
            count += 1

    total_pnl = realized + unrealized - commission

    return PortfolioTotals(
        total_value=value,
        total_realized_pnl=realized,
        total_unrealized_pnl=unrealized,
        total_commission=commission,
        total_pnl=total_pnl,
        total_pnl_percent=percent(total_pnl, cost),
        total_cost=cost,
        open_positions=count,
    )
