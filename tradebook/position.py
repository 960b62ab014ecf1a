"""Mark ledger state to market.

aggregate() turns a symbol's replayed ledger state plus a current price into a
Position. reprice() is the incremental path for live price ticks: it reuses
everything already resident on a Position and only recomputes the price
dependent fields, so a tick never needs a ledger replay.

Both paths run the exact same _mark() math, which is what guarantees a repriced
position is identical to one produced by a full rebuild at the same price.
"""

from __future__ import annotations

import dataclasses
import datetime
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from tradebook.ledger import LedgerState, Lot
from tradebook.trade import Price, Qty

ZERO = Decimal(0)
HUNDRED = Decimal(100)


def percent(numerator: Decimal, denominator: Decimal) -> Decimal:
    """numerator as a percent of denominator, or zero when the denominator isn't positive."""
    if denominator > 0:
        return numerator / denominator * HUNDRED

    return ZERO


@dataclass(frozen=True, slots=True)
class Position:
    """Aggregated holding and P&L state for one symbol.

    Positions with total_quantity == 0 are closed: they are hidden from the
    visible portfolio but still carry realized P&L and commission into the
    portfolio totals.
    """

    symbol: str

    # ledger derived (unaffected by price)
    total_quantity: Qty
    total_cost: Price
    average_price: Price
    realized_pnl: Price
    total_commission: Price
    total_invested: Price

    # market derived
    current_price: Price
    current_value: Price
    unrealized_pnl: Price
    unrealized_pnl_percent: Decimal
    total_pnl: Price
    total_pnl_percent: Decimal

    lots: tuple[Lot, ...] = ()
    trade_count: int = 0
    first_trade_at: datetime.datetime | None = None
    last_trade_at: datetime.datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.total_quantity > 0


def _mark(
    total_quantity: Qty,
    total_cost: Price,
    realized_pnl: Price,
    total_commission: Price,
    total_invested: Price,
    current_price: Price,
) -> dict[str, Decimal]:
    """All price dependent fields for a position at 'current_price'."""
    current_value = total_quantity * current_price
    unrealized = current_value - total_cost if total_quantity > 0 else ZERO
    total_pnl = realized_pnl + unrealized - total_commission

    return dict(
        current_price=current_price,
        current_value=current_value,
        unrealized_pnl=unrealized,
        unrealized_pnl_percent=percent(unrealized, total_cost),
        total_pnl=total_pnl,
        total_pnl_percent=percent(total_pnl, total_invested),
    )


def aggregate(state: LedgerState, current_price: Price) -> Position:
    """Build a Position from a symbol's ledger state at 'current_price'."""
    return Position(
        symbol=state.symbol,
        total_quantity=state.total_quantity,
        total_cost=state.total_cost,
        average_price=state.average_price,
        realized_pnl=state.realized_pnl,
        total_commission=state.total_commission,
        total_invested=state.total_invested,
        lots=state.lots,
        trade_count=state.trade_count,
        first_trade_at=state.first_trade_at,
        last_trade_at=state.last_trade_at,
        **_mark(
            state.total_quantity,
            state.total_cost,
            state.realized_pnl,
            state.total_commission,
            state.total_invested,
            current_price,
        ),
    )


def reprice(position: Position, current_price: Price) -> Position:
    """Apply a new price to an open position in O(1).

    Closed positions have nothing to mark, so they come back unchanged."""
    if not position.is_open:
        return position

    return dataclasses.replace(
        position,
        **_mark(
            position.total_quantity,
            position.total_cost,
            position.realized_pnl,
            position.total_commission,
            position.total_invested,
            current_price,
        ),
    )


def ranked(positions: Iterable[Position]) -> tuple[Position, ...]:
    """Open positions only, best total P&L first (ties ordered by symbol)."""
    return tuple(
        sorted(
            (p for p in positions if p.is_open),
            key=lambda p: (-p.total_pnl, p.symbol),
        )
    )
