"""FIFO lot ledger.

Each symbol owns a queue of open purchase lots. Buys append a lot to the back
of the queue; sells consume lots from the front at each lot's own unit cost,
which is what makes realized P&L depend only on the oldest remaining basis.

LEDGER INVARIANTS:
==================

For every symbol, at all times:

1. sum(lot.quantity for lot in lots) == total_quantity
2. sum(lot.quantity * lot.unit_cost for lot in lots) == total_cost
3. total_quantity >= 0 (a sell larger than the open quantity is refused)
4. total_quantity == 0 implies total_cost == 0 and average_price == 0

Commission never touches lot quantities or lot costs. It is summed per symbol
and only nets against total P&L once, later, in the position math.

Refused sells (oversells) leave the ledger completely untouched and come back
as Diagnostic values so callers can report them without failing the replay.
"""

from __future__ import annotations

import datetime
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal

from loguru import logger

from tradebook.trade import Price, Qty, Trade

ZERO = Decimal(0)


@dataclass(frozen=True, slots=True)
class Lot:
    """A discrete purchased quantity at a fixed unit cost.

    Lots are immutable; consuming part of a lot replaces it in the queue with
    a smaller copy so snapshots handed out earlier never change underneath
    their holders."""

    quantity: Qty
    unit_cost: Price
    opened_at: datetime.datetime

    # informational only, carried from the originating buy
    commission: Price = ZERO
    commission_asset: str = ""
    origin_trade_id: str = ""

    @property
    def cost(self) -> Decimal:
        return self.quantity * self.unit_cost


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """A per-trade problem found during replay which didn't stop the replay."""

    symbol: str
    kind: Literal["oversell"]
    trade: Trade
    message: str


@dataclass(frozen=True, slots=True)
class LedgerState:
    """Immutable view of one symbol's ledger after replay."""

    symbol: str
    lots: tuple[Lot, ...]
    total_quantity: Qty
    total_cost: Price
    average_price: Price
    realized_pnl: Price
    total_commission: Price
    total_invested: Price
    trade_count: int
    first_trade_at: datetime.datetime | None
    last_trade_at: datetime.datetime | None

    @property
    def is_open(self) -> bool:
        return self.total_quantity > 0


@dataclass(slots=True)
class SymbolLedger:
    """Lot queue and running totals for a single symbol."""

    symbol: str
    lots: deque[Lot] = field(default_factory=deque)

    total_quantity: Qty = ZERO
    total_cost: Price = ZERO
    realized_pnl: Price = ZERO
    total_commission: Price = ZERO

    # sum of quantity * raw price over buys, used as the percent denominator
    total_invested: Price = ZERO

    trade_count: int = 0
    first_trade_at: datetime.datetime | None = None
    last_trade_at: datetime.datetime | None = None

    @property
    def average_price(self) -> Price:
        if not self.total_quantity:
            return ZERO

        return self.total_cost / self.total_quantity

    def apply(self, trade: Trade) -> Diagnostic | None:
        """Apply one trade in replay order.

        Returns None when applied, or a Diagnostic when the trade was refused."""
        if trade.symbol != self.symbol:
            raise ValueError(f"{trade.symbol} trade applied to {self.symbol} ledger")

        if trade.is_buy:
            self._buy(trade)
        else:
            if trade.quantity > self.total_quantity:
                message = (
                    f"SELL {trade.quantity} exceeds open quantity {self.total_quantity}; not applied"
                )
                logger.warning("[{}] Oversell at {}: {}", self.symbol, trade.timestamp, message)
                return Diagnostic(self.symbol, "oversell", trade, message)

            self._sell(trade)

        # commission nets against total P&L once, independent of lot matching
        self.total_commission += trade.commission_value
        self.trade_count += 1

        if self.first_trade_at is None:
            self.first_trade_at = trade.timestamp

        self.last_trade_at = trade.timestamp
        return None

    def _buy(self, trade: Trade) -> None:
        self.lots.append(
            Lot(
                quantity=trade.quantity,
                unit_cost=trade.effective_price,
                opened_at=trade.timestamp,
                commission=trade.commission,
                commission_asset=trade.commission_asset,
                origin_trade_id=trade.source_id,
            )
        )

        self.total_quantity += trade.quantity
        self.total_cost += trade.quantity * trade.effective_price
        self.total_invested += trade.notional

    def _sell(self, trade: Trade) -> Price:
        """Consume lots front-first for 'trade' and return the realized P&L of the sale."""
        remaining = trade.quantity
        consumed = ZERO

        while remaining > 0:
            lot = self.lots[0]
            take = min(remaining, lot.quantity)
            consumed += take * lot.unit_cost
            remaining -= take

            if take == lot.quantity:
                self.lots.popleft()
            else:
                self.lots[0] = Lot(
                    quantity=lot.quantity - take,
                    unit_cost=lot.unit_cost,
                    opened_at=lot.opened_at,
                    commission=lot.commission,
                    commission_asset=lot.commission_asset,
                    origin_trade_id=lot.origin_trade_id,
                )

        # proceeds use the sell's own effective price, not the lot prices
        realized = trade.quantity * trade.effective_price - consumed
        self.realized_pnl += realized

        self.total_quantity -= trade.quantity
        self.total_cost -= consumed

        # flat means flat: don't let rounding residue leak into an empty position
        if self.total_quantity <= 0:
            self.total_quantity = ZERO
            self.total_cost = ZERO
            self.lots.clear()

        logger.debug(
            "[{}] SELL {} @ {} consumed basis {} realized {}",
            self.symbol,
            trade.quantity,
            trade.effective_price,
            consumed,
            realized,
        )

        return realized

    def snapshot(self) -> LedgerState:
        return LedgerState(
            symbol=self.symbol,
            lots=tuple(self.lots),
            total_quantity=self.total_quantity,
            total_cost=self.total_cost,
            average_price=self.average_price,
            realized_pnl=self.realized_pnl,
            total_commission=self.total_commission,
            total_invested=self.total_invested,
            trade_count=self.trade_count,
            first_trade_at=self.first_trade_at,
            last_trade_at=self.last_trade_at,
        )

    def validate(self) -> list[str]:
        """Re-check the lot queue invariants and describe any violations."""
        violations: list[str] = []

        lot_qty = sum((lot.quantity for lot in self.lots), ZERO)
        lot_cost = sum((lot.cost for lot in self.lots), ZERO)

        if lot_qty != self.total_quantity:
            violations.append(
                f"{self.symbol}: lot quantity {lot_qty} != total quantity {self.total_quantity}"
            )

        if lot_cost != self.total_cost:
            violations.append(
                f"{self.symbol}: lot cost {lot_cost} != total cost {self.total_cost}"
            )

        if self.total_quantity < 0:
            violations.append(f"{self.symbol}: negative quantity {self.total_quantity}")

        for idx, lot in enumerate(self.lots):
            if lot.quantity <= 0:
                violations.append(f"{self.symbol}: lot {idx} has quantity {lot.quantity}")

        return violations


@dataclass(slots=True)
class LotLedger:
    """All symbol ledgers for one replay of the trade history."""

    books: dict[str, SymbolLedger] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @classmethod
    def replay(cls, trades: Iterable[Trade]) -> LotLedger:
        """Build a fresh ledger from trades already in replay order."""
        ledger = cls()
        for trade in trades:
            ledger.apply(trade)

        return ledger

    def apply(self, trade: Trade) -> Diagnostic | None:
        if not (book := self.books.get(trade.symbol)):
            book = self.books[trade.symbol] = SymbolLedger(trade.symbol)

        if diagnostic := book.apply(trade):
            self.diagnostics.append(diagnostic)

        return diagnostic

    def snapshot(self) -> dict[str, LedgerState]:
        return {symbol: book.snapshot() for symbol, book in self.books.items()}

    def validate(self) -> list[str]:
        return [v for book in self.books.values() for v in book.validate()]
