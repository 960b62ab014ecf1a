"""Text and tabular views of engine output."""

from __future__ import annotations

from collections.abc import Iterable

import pandas as pd  # type: ignore

from tradebook.engine import PortfolioSnapshot
from tradebook.fees import mn
from tradebook.position import Position
from tradebook.totals import PortfolioTotals


def _table(headers: list[str], rows: list[list[str]]) -> list[str]:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    separator = "+" + "+".join("-" * (w + 2) for w in widths) + "+"

    def line(cells: list[str]) -> str:
        return "|" + "|".join(f" {cells[i]:<{widths[i]}} " for i in range(len(cells))) + "|"

    return [separator, line(headers), separator, *[line(row) for row in rows], separator]


def position_table(
    positions: Iterable[Position], totals: PortfolioTotals | None = None
) -> str:
    """Boxed table of positions, with a totals row when 'totals' is given."""
    positions = list(positions)
    if not positions:
        return "No positions found."

    headers = [
        "Symbol",
        "Qty",
        "Avg Price",
        "Price",
        "Value",
        "Unrealized",
        "Realized",
        "Commission",
        "Total P&L",
        "P&L %",
    ]

    rows = [
        [
            p.symbol,
            f"{p.total_quantity:,f}",
            mn(p.average_price),
            mn(p.current_price),
            mn(p.current_value),
            mn(p.unrealized_pnl),
            mn(p.realized_pnl),
            mn(p.total_commission),
            mn(p.total_pnl),
            f"{p.total_pnl_percent:,.2f}%",
        ]
        for p in positions
    ]

    if totals:
        rows.append(
            [
                "TOTAL",
                str(totals.open_positions),
                "",
                "",
                mn(totals.total_value),
                mn(totals.total_unrealized_pnl),
                mn(totals.total_realized_pnl),
                mn(totals.total_commission),
                mn(totals.total_pnl),
                f"{totals.total_pnl_percent:,.2f}%",
            ]
        )

    return "\n".join(_table(headers, rows))


def portfolio_summary(snapshot: PortfolioSnapshot) -> str:
    totals = snapshot.totals

    lines = [
        f"PORTFOLIO (generation {snapshot.generation})",
        "=" * 60,
        f"Open Positions: {totals.open_positions}",
        f"Total Value: {mn(totals.total_value)}",
        f"Open Cost: {mn(totals.total_cost)}",
        f"Unrealized P&L: {mn(totals.total_unrealized_pnl)}",
        f"Realized P&L: {mn(totals.total_realized_pnl)}",
        f"Commission: {mn(totals.total_commission)}",
        f"Total P&L: {mn(totals.total_pnl)} ({totals.total_pnl_percent:,.2f}%)",
    ]

    if snapshot.price_errors:
        lines.extend(
            ["", "PRICE ERRORS:", *[f"  - {symbol}" for symbol in snapshot.price_errors]]
        )

    if snapshot.diagnostics:
        lines.extend(
            [
                "",
                "DIAGNOSTICS:",
                *[f"  - [{d.symbol}] {d.kind}: {d.message}" for d in snapshot.diagnostics],
            ]
        )

    if snapshot.rejected:
        lines.extend(["", f"REJECTED RECORDS: {len(snapshot.rejected)}"])

    return "\n".join(lines)


def positions_frame(positions: Iterable[Position]) -> pd.DataFrame:
    """One row per position, indexed by symbol (lots left out)."""
    columns = [
        "symbol",
        "total_quantity",
        "average_price",
        "total_cost",
        "current_price",
        "current_value",
        "unrealized_pnl",
        "unrealized_pnl_percent",
        "realized_pnl",
        "total_commission",
        "total_pnl",
        "total_pnl_percent",
        "trade_count",
    ]

    df = pd.DataFrame(
        [{c: getattr(p, c) for c in columns} for p in positions], columns=columns
    )
    return df.set_index("symbol")
