"""Turn raw trade records into validated Trade values.

Trade records arrive from a file store or straight from an exchange order
response, so every field can be a string, a number, missing, or garbage.
Nothing past this module ever sees a raw record: downstream code only
operates on Trade values, and every record either becomes a Trade or a
Rejected value saying why it was left out.

Malformed numeric fields don't fail the batch. A non-numeric, non-finite, or
negative quantity/price/commission becomes zero, which either makes the trade
inert or (for quantity) gets it rejected outright.

Ordering matters: the lot ledger replays trades per symbol in timestamp order
and FIFO results depend on that order, so normalize_all() groups by symbol and
stable-sorts by time (ties keep their original insertion order).
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, TypeAlias

import arrow  # type: ignore
from loguru import logger

from tradebook.fees import CommissionPolicy, ExecutionPricePolicy

Price: TypeAlias = Decimal
Qty: TypeAlias = Decimal

ZERO = Decimal(0)

# Trades with no usable timestamp sort before everything else
EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

Side = Enum("Side", "BUY SELL")


def decimalOrZero(val: Any) -> Decimal:
    """Coerce 'val' into a non-negative finite Decimal, or zero if it can't be."""
    if val is None or isinstance(val, bool):
        return ZERO

    try:
        # floats go through str() so 0.1 stays 0.1 instead of 0.1000000000000000055...
        got = Decimal(str(val).strip()) if not isinstance(val, Decimal) else val
    except (InvalidOperation, ValueError, TypeError):
        return ZERO

    if not got.is_finite() or got < 0:
        return ZERO

    return got


def parseTimestamp(val: Any) -> datetime.datetime | None:
    """Parse ISO-8601 strings, epoch seconds/milliseconds, or datetimes into UTC."""
    if val is None or val == "" or isinstance(val, bool):
        return None

    try:
        if isinstance(val, datetime.datetime):
            return arrow.get(val).to("UTC").datetime

        # Numeric timestamps (or numeric strings) are epoch values. Anything
        # past year ~5138 in seconds is really milliseconds.
        try:
            seconds = Decimal(str(val).strip())
        except InvalidOperation:
            seconds = None

        if seconds is not None and seconds.is_finite():
            if seconds > 100_000_000_000:
                seconds /= 1000

            return arrow.get(float(seconds)).datetime

        return arrow.get(str(val)).to("UTC").datetime
    except (ValueError, TypeError, OverflowError):
        return None


def _field(record: Mapping, *names: str, default: Any = None) -> Any:
    """Return the first present value for any of 'names' (camelCase or snake_case)."""
    for name in names:
        if (got := record.get(name)) is not None:
            return got

    return default


@dataclass(frozen=True, slots=True)
class Trade:
    """One settled execution in canonical form.

    'effective_price' is the basis for all cost and proceeds math. 'price' is
    the raw execution price, kept for invested-capital totals and display.

    'commission' is the raw amount in 'commission_asset' while
    'commission_value' is the same commission converted to quote terms by the
    commission policy at ingestion time.
    """

    symbol: str
    side: Side
    quantity: Qty
    price: Price
    effective_price: Price
    commission: Price = ZERO
    commission_asset: str = ""
    commission_value: Price = ZERO
    timestamp: datetime.datetime = EPOCH
    success: bool = True
    is_manual: bool = False
    source_id: str = ""

    @property
    def is_buy(self) -> bool:
        return self.side is Side.BUY

    @property
    def notional(self) -> Decimal:
        """Raw quote value of this trade (quantity * raw price)."""
        return self.quantity * self.price


@dataclass(frozen=True, slots=True)
class Rejected:
    """A raw record which didn't make it into accounting, and why."""

    record: Any
    reason: str


def normalize(record: Any, policy: CommissionPolicy | None = None) -> Trade | Rejected:
    """Validate one raw trade record into a Trade, or describe why it was rejected.

    Never raises for bad field data: malformed numbers become zero and
    unusable records come back as Rejected values."""
    if not isinstance(record, Mapping):
        return Rejected(record, "record")

    # only trades known to have settled enter accounting
    if record.get("success") is not True:
        return Rejected(record, "unsuccessful")

    symbol = str(_field(record, "symbol", default="")).strip().upper()
    if not symbol:
        return Rejected(record, "symbol")

    side = _field(record, "side", default="")
    if not isinstance(side, Side):
        try:
            side = Side[str(side).strip().upper()]
        except KeyError:
            return Rejected(record, "side")

    quantity = decimalOrZero(_field(record, "quantity", "qty"))
    if not quantity:
        return Rejected(record, "quantity")

    policy = policy or ExecutionPricePolicy()

    price = decimalOrZero(_field(record, "price"))
    commission = decimalOrZero(_field(record, "commission"))
    asset = str(_field(record, "commissionAsset", "commission_asset", default="")).upper()

    # A recorded effective price already has whatever fee adjustment the
    # recorder wanted, so only ask the policy when there isn't one.
    effective = decimalOrZero(_field(record, "effectivePrice", "effective_price"))
    if not effective:
        effective = policy.effective_price(
            symbol, side is Side.BUY, price, quantity, commission, asset
        )

    when = parseTimestamp(_field(record, "timestamp", "time", "ts"))
    if when is None:
        logger.warning("[{}] Trade has no usable timestamp, ordering it first: {}", symbol, record)
        when = EPOCH

    return Trade(
        symbol=symbol,
        side=side,
        quantity=quantity,
        price=price,
        effective_price=effective,
        commission=commission,
        commission_asset=asset,
        commission_value=policy.commission_value(symbol, price, commission, asset),
        timestamp=when,
        success=True,
        is_manual=_field(record, "isManual", "is_manual", default=False) is True,
        source_id=str(_field(record, "sourceId", "source_id", "id", "orderId", default="")),
    )


def normalize_all(
    records: Iterable[Any], policy: CommissionPolicy | None = None
) -> tuple[list[Trade], list[Rejected]]:
    """Normalize a whole batch into ledger replay order.

    Returns (trades, rejected) where trades are grouped by symbol and sorted by
    ascending timestamp within each symbol. The sort is stable, so trades with
    identical timestamps keep their original insertion order.

    Records repeating an already-accepted source id are rejected as duplicates
    so re-ingesting the same fills doesn't double count them."""
    policy = policy or ExecutionPricePolicy()
    trades: list[Trade] = []
    rejected: list[Rejected] = []
    seen: set[str] = set()

    for record in records:
        got = normalize(record, policy)
        if isinstance(got, Rejected):
            rejected.append(got)
            continue

        if got.source_id:
            if got.source_id in seen:
                rejected.append(Rejected(record, "duplicate"))
                continue

            seen.add(got.source_id)

        trades.append(got)

    if rejected:
        logger.debug(
            "Rejected {} of {} trade records", len(rejected), len(rejected) + len(trades)
        )

    trades.sort(key=lambda t: (t.symbol, t.timestamp))
    return trades, rejected
