"""Commission normalization for executed trades.

Exchanges charge commission in whichever asset they feel like:
  - spot buys usually pay in the base asset (buy BTC, pay 0.001 BTC)
  - spot sells usually pay in the quote asset (sell BTC, pay 10 USDT)
  - discounted fees can arrive in a third asset entirely (pay 0.02 BNB)

Everything downstream wants a single money unit, so commission values are
converted into quote-currency terms here before any P&L math sees them.

The effective price used as the cost/proceeds basis is also decided here, but
only when a trade record doesn't already carry one. Which adjustment to apply
is a policy decision, so it lives on swappable policy objects instead of being
hard-coded into the trade normalizer.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal

from loguru import logger

ZERO = Decimal(0)

# Checked longest-first so FDUSD wins over USD and BUSD wins over USD, etc.
QUOTE_ASSETS = (
    "USDT",
    "FDUSD",
    "USDC",
    "BUSD",
    "TUSD",
    "BTC",
    "ETH",
    "BNB",
    "EUR",
    "USD",
)


def mn(val) -> str:
    """format numeric input as money"""

    # Decimal formats through the same mini-language as float, so this
    # works for either without converting.
    return f"${val:,.2f}".replace("$-", "-$")


def splitSymbol(symbol: str, quotes: tuple[str, ...] = QUOTE_ASSETS) -> tuple[str, str]:
    """Split an exchange pair id like BTCUSDT into (base, quote).

    Returns (symbol, "") when no known quote asset matches as a proper suffix."""
    symbol = symbol.upper()
    for quote in sorted(quotes, key=len, reverse=True):
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)], quote

    return symbol, ""


@dataclass(slots=True)
class CommissionPolicy:
    """Base policy: converts commission into quote terms, never adjusts price."""

    quotes: tuple[str, ...] = QUOTE_ASSETS

    # Conversion rates (in quote terms) for commission assets which are
    # neither the base nor the quote asset of the traded pair (e.g. BNB).
    asset_prices: Mapping[str, Decimal] = field(default_factory=dict)

    def commission_value(
        self, symbol: str, price: Decimal, commission: Decimal, asset: str
    ) -> Decimal:
        """Return 'commission' expressed in the quote currency of 'symbol'."""
        if not commission:
            return ZERO

        base, quote = splitSymbol(symbol, self.quotes)
        asset = (asset or "").upper()

        # no asset recorded means the exchange charged in quote terms already
        if not asset or asset == quote:
            return commission

        if asset == base:
            return commission * price

        if (rate := self.asset_prices.get(asset)) is not None:
            return commission * Decimal(rate)

        logger.warning(
            "[{}] No conversion rate for commission asset {}, counting {} as quote value",
            symbol,
            asset,
            commission,
        )
        return commission

    def effective_price(
        self,
        symbol: str,
        buy: bool,
        price: Decimal,
        quantity: Decimal,
        commission: Decimal,
        asset: str,
    ) -> Decimal:
        return price


@dataclass(slots=True)
class ExecutionPricePolicy(CommissionPolicy):
    """Use the raw execution price as the effective price.

    Commission is left entirely to the totals, where it nets once against
    total P&L, so lot cost basis and sale proceeds never include fees."""


@dataclass(slots=True)
class QuoteAdjustedPolicy(CommissionPolicy):
    """Fold quote-denominated sell commission into the effective sell price.

    This matches how order fills have historically been recorded:
      - BUY commission is usually paid in the base asset, so the quote cost
        of the purchase is just the execution price
      - SELL commission paid in the base asset doesn't change proceeds
      - SELL commission paid in anything else reduces proceeds per unit

    Note: commission is still summed into position totals as well, so quote
          sell commission is counted both in proceeds and in total commission
          under this policy. Use ExecutionPricePolicy if that matters to you.
    """

    def effective_price(
        self,
        symbol: str,
        buy: bool,
        price: Decimal,
        quantity: Decimal,
        commission: Decimal,
        asset: str,
    ) -> Decimal:
        if buy or not commission or not quantity:
            return price

        base, _ = splitSymbol(symbol, self.quotes)
        if (asset or "").upper() == base:
            return price

        value = self.commission_value(symbol, price, commission, asset)
        return max(ZERO, price - value / quantity)


POLICIES: dict[str, type[CommissionPolicy]] = {
    "execution": ExecutionPricePolicy,
    "quote-adjusted": QuoteAdjustedPolicy,
}


def policyFor(name: str, **kwargs) -> CommissionPolicy:
    """Build a commission policy from its configuration name."""
    try:
        return POLICIES[name.strip().lower()](**kwargs)
    except KeyError:
        raise ValueError(
            f"Unknown commission policy {name!r}; expected one of: {', '.join(POLICIES)}"
        ) from None
