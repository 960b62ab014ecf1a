"""Position accounting engine.

The engine owns one derived view of a trade history: lots, positions, and
portfolio totals. It has two ways of updating that view:

    - recompute_all(): full rebuild. Trades are normalized, replayed through
      a fresh FIFO ledger, marked to market using one price lookup per open
      symbol (looked up concurrently), then folded into totals. Everything
      derived before is discarded and replaced in one commit.

    - apply_price_tick(): incremental. A single (symbol, price) update
      reprices one open position in place and refolds the totals. The ledger
      isn't touched because price changes can't change lots.

Usage:

    engine = PnLEngine(client.price, loader=store.load_trades, feed=feed)
    snap = await engine.recompute_all()
    for position in snap.positions:
        print(position.symbol, position.total_pnl)

    # live updates: the feed pushes ticks into engine.ticks and
    # run_ticks() applies them as they arrive
    asyncio.create_task(engine.run_ticks())

RECOMPUTE SERIALIZATION:
========================

Rebuilds are not reentrant. Each call to recompute_all() takes a new
generation number, then waits for the rebuild lock:

    - if a newer call arrived while this one was waiting, this one is
      skipped entirely (the newer one will do the work)
    - if a newer call arrived while this one was running, this one's result
      is discarded instead of committed (the newer one is already queued)

Either way the superseded caller gets the engine's current snapshot.

Ticks are synchronous and never await, so a tick either lands entirely before
or entirely after any commit, and nothing ever observes a position updated
without its matching totals.

ERROR CATEGORIES:
=================

    - malformed records: coerced or rejected by the normalizer (see .rejected)
    - oversells: skipped by the ledger, reported in .diagnostics
    - price failures: position kept at its last known price (or zero), the
      symbol is reported in .price_errors
    - no usable trade list at all: RecomputeError, and engine state stays
      exactly as it was before the call
"""

from __future__ import annotations

import asyncio
import functools
import inspect
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol, TypeAlias

from loguru import logger

from tradebook.fees import CommissionPolicy, ExecutionPricePolicy
from tradebook.ledger import Diagnostic, LotLedger
from tradebook.position import Position, aggregate, ranked, reprice
from tradebook.totals import PortfolioTotals, fold
from tradebook.trade import Price, Rejected, decimalOrZero, normalize_all

ZERO = Decimal(0)

# symbol -> price, None, or an awaitable of either. Raising means unavailable too.
PriceLookup: TypeAlias = Callable[[str], Any]

# () -> iterable of raw trade records, or an awaitable of one
TradeLoader: TypeAlias = Callable[[], Any]


class RecomputeError(Exception):
    """The trade list itself couldn't be obtained, so there was nothing to rebuild."""


class PriceFeed(Protocol):
    def subscribe(self, symbol: str, on_tick: Callable[[Any], None]) -> Any: ...

    def unsubscribe(self, symbol: str) -> Any: ...


@dataclass(slots=True)
class TickChannel:
    """Pending live prices, coalesced per symbol.

    Only the newest price per symbol matters, so a burst of ticks for one
    symbol collapses into a single pending update. Ordering across symbols
    isn't meaningful and isn't preserved beyond dict insertion order."""

    pending: dict[str, Any] = field(default_factory=dict)
    ready: asyncio.Event = field(default_factory=asyncio.Event)

    def put(self, symbol: str, price: Any) -> None:
        self.pending[symbol.upper()] = price
        self.ready.set()

    def drain(self) -> list[tuple[str, Any]]:
        got = list(self.pending.items())
        self.pending.clear()
        self.ready.clear()
        return got

    async def wait(self) -> None:
        await self.ready.wait()

    def __len__(self) -> int:
        return len(self.pending)


@dataclass(frozen=True, slots=True)
class PortfolioSnapshot:
    """Everything the presentation layer needs from one committed state."""

    positions: tuple[Position, ...] = ()
    totals: PortfolioTotals = PortfolioTotals()
    price_errors: tuple[str, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()
    rejected: tuple[Rejected, ...] = ()
    generation: int = 0


@dataclass
class PnLEngine:
    """Stateful position/P&L engine for one session.

    Collaborators are injected so tests can run against fakes:
      - price_lookup: point-in-time quote per symbol (sync or async)
      - loader: source of raw trade records when recompute_all() gets none
      - feed: optional live price feed for open symbols
    """

    price_lookup: PriceLookup
    loader: TradeLoader | None = None
    policy: CommissionPolicy = field(default_factory=ExecutionPricePolicy)
    feed: PriceFeed | None = None

    # seconds to wait on any one async price lookup, None waits forever
    lookup_timeout: float | None = 10.0

    ticks: TickChannel = field(default_factory=TickChannel)

    def __post_init__(self):
        # bumped by every recompute trigger
        self.generation = 0

        # generation of the rebuild currently reflected in state
        self.committed = 0

        self._lock = asyncio.Lock()

        # all tracked positions, open and closed
        self._positions: dict[str, Position] = {}
        self._visible: tuple[Position, ...] = ()
        self._totals = PortfolioTotals()

        self.price_errors: tuple[str, ...] = ()
        self.diagnostics: tuple[Diagnostic, ...] = ()
        self.rejected: tuple[Rejected, ...] = ()

        # last known price per symbol, and the tick sequence it arrived at
        self._prices: dict[str, Price] = {}
        self._priceSeq: dict[str, int] = {}
        self._seq = 0

        self._subscribed: set[str] = set()

    @property
    def positions(self) -> tuple[Position, ...]:
        """Open positions, best total P&L first."""
        return self._visible

    @property
    def totals(self) -> PortfolioTotals:
        return self._totals

    def position(self, symbol: str) -> Position | None:
        """Any tracked position (open or closed) by symbol."""
        return self._positions.get(symbol.upper())

    def last_price(self, symbol: str) -> Price | None:
        return self._prices.get(symbol.upper())

    def snapshot(self) -> PortfolioSnapshot:
        return PortfolioSnapshot(
            positions=self._visible,
            totals=self._totals,
            price_errors=self.price_errors,
            diagnostics=self.diagnostics,
            rejected=self.rejected,
            generation=self.committed,
        )

    async def recompute_all(self, trades: Iterable[Any] | None = None) -> PortfolioSnapshot:
        """Rebuild all positions and totals from scratch.

        'trades' is the raw trade record list; when None, the configured
        loader provides it. Raises RecomputeError if no trade list can be
        obtained (state is left untouched in that case)."""
        self.generation += 1
        generation = self.generation

        async with self._lock:
            if generation != self.generation:
                logger.debug(
                    "Skipping recompute {} superseded by {}", generation, self.generation
                )
                return self.snapshot()

            records = await self._load(trades)
            started = self._seq

            normalized, rejected = normalize_all(records, self.policy)
            ledger = LotLedger.replay(normalized)
            states = ledger.snapshot()

            opened = sorted(s for s, state in states.items() if state.is_open)
            looked = await self._lookup_all(opened)

            if generation != self.generation:
                logger.info(
                    "Discarding stale recompute {} (latest trigger is {})",
                    generation,
                    self.generation,
                )
                return self.snapshot()

            errors: list[str] = []
            prices: dict[str, Price] = {}
            for symbol in sorted(states):
                if self._priceSeq.get(symbol, -1) > started:
                    # a live tick arrived while we were rebuilding, it's newer than any lookup
                    prices[symbol] = self._prices[symbol]
                elif (got := looked.get(symbol)) is not None:
                    prices[symbol] = got
                else:
                    if symbol in looked:
                        errors.append(symbol)

                    prices[symbol] = self._prices.get(symbol, ZERO)

            positions = {
                symbol: aggregate(state, prices[symbol]) for symbol, state in states.items()
            }

            # commit everything together
            for symbol, price in looked.items():
                if price is not None and self._priceSeq.get(symbol, -1) <= started:
                    self._prices[symbol] = price

            self._positions = positions
            self._totals = fold(positions.values())
            self._visible = ranked(positions.values())
            self.price_errors = tuple(errors)
            self.diagnostics = tuple(ledger.diagnostics)
            self.rejected = tuple(rejected)
            self.committed = generation

            logger.info(
                "Recompute {} committed: {} trades, {} open positions, {} price errors, {} oversells",
                generation,
                len(normalized),
                len(self._visible),
                len(errors),
                len(self.diagnostics),
            )

            self._sync_subscriptions()
            return self.snapshot()

    async def _load(self, trades: Iterable[Any] | None) -> list[Any]:
        if trades is None:
            if self.loader is None:
                raise RecomputeError("No trades given and no trade loader configured")

            try:
                trades = self.loader()
                if inspect.isawaitable(trades):
                    trades = await trades
            except Exception as e:
                raise RecomputeError(f"Trade loader failed: {e}") from e

        if trades is None:
            raise RecomputeError("Trade loader returned no trade list")

        # iterating these would yield keys or characters, not records
        if isinstance(trades, (Mapping, str, bytes)):
            raise RecomputeError(
                f"Trade list must be a sequence of records, got {type(trades).__name__}"
            )

        try:
            return list(trades)
        except TypeError as e:
            raise RecomputeError(f"Trade list is not iterable: {e}") from e
        except Exception as e:
            # lazy loaders can fail partway through
            raise RecomputeError(f"Trade list failed while loading: {e}") from e

    async def _lookup_all(self, symbols: list[str]) -> dict[str, Price | None]:
        """Fan out one price lookup per symbol; failures come back as None."""
        got = await asyncio.gather(*[self._lookup(symbol) for symbol in symbols])
        return dict(zip(symbols, got))

    async def _lookup(self, symbol: str) -> Price | None:
        try:
            got = self.price_lookup(symbol)
            if inspect.isawaitable(got):
                got = await asyncio.wait_for(got, self.lookup_timeout)
        except Exception as e:
            logger.warning("[{}] Price lookup failed: {}", symbol, repr(e))
            return None

        price = decimalOrZero(got)
        if not price:
            logger.warning("[{}] Price lookup returned no usable price: {}", symbol, got)
            return None

        return price

    def apply_price_tick(self, symbol: str, price: Any) -> PortfolioSnapshot:
        """Reprice one symbol's open position and refold totals.

        No-op (besides remembering the price) for untracked or closed symbols."""
        symbol = symbol.upper()
        value = decimalOrZero(price)
        if not value:
            logger.warning("[{}] Ignoring tick with unusable price: {}", symbol, price)
            return self.snapshot()

        self._seq += 1
        self._prices[symbol] = value
        self._priceSeq[symbol] = self._seq

        position = self._positions.get(symbol)
        if position is None or not position.is_open:
            return self.snapshot()

        self._positions[symbol] = reprice(position, value)
        self._totals = fold(self._positions.values())
        self._visible = ranked(self._positions.values())

        return self.snapshot()

    def consume_ticks(self) -> int:
        """Apply every pending tick from the channel, returning how many were applied."""
        pending = self.ticks.drain()
        for symbol, price in pending:
            self.apply_price_tick(symbol, price)

        return len(pending)

    async def run_ticks(self) -> None:
        """Apply ticks as they arrive until cancelled."""
        while True:
            await self.ticks.wait()
            self.consume_ticks()

    def _sync_subscriptions(self) -> None:
        """Keep exactly one feed subscription per open symbol."""
        if not self.feed:
            return

        wanted = {p.symbol for p in self._visible}

        for symbol in sorted(wanted - self._subscribed):
            self.feed.subscribe(symbol, functools.partial(self.ticks.put, symbol))
            self._subscribed.add(symbol)

        for symbol in sorted(self._subscribed - wanted):
            self.feed.unsubscribe(symbol)
            self._subscribed.discard(symbol)

    @property
    def subscribed(self) -> frozenset[str]:
        return frozenset(self._subscribed)

    def close(self) -> None:
        """Drop every live subscription this engine holds."""
        if self.feed:
            for symbol in sorted(self._subscribed):
                self.feed.unsubscribe(symbol)

        self._subscribed.clear()
