"""File backed trade history.

All trades live in a single JSON document:

    {"trades": [...], "settings": {"createdAt": ..., "lastUpdated": ...}}

Records are stored exactly as given (exchange order conversions, manual
entries, imports) plus bookkeeping fields (id, createdAt, updatedAt,
importedAt). Nothing here validates trade contents; that's the normalizer's
job when the engine loads the history.

Every mutation rewrites the whole file through a temp file + rename so a
crash mid-write never leaves a truncated history behind.
"""

from __future__ import annotations

import os
import pathlib
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

import arrow  # type: ignore
import orjson
from loguru import logger

from tradebook.trade import EPOCH, Side, decimalOrZero, parseTimestamp

EXPORT_VERSION = "1.0"


class StoreError(Exception):
    """The trade file couldn't be read, parsed, or written."""


def nowISO() -> str:
    return arrow.utcnow().isoformat()


def tradeId() -> str:
    return f"trade_{arrow.utcnow().int_timestamp * 1000}_{uuid.uuid4().hex[:9]}"


def encodeDefault(obj):
    """orjson fallback for the types trade records commonly carry."""
    if isinstance(obj, Decimal):
        return str(obj)

    raise TypeError(f"Can't serialize {type(obj).__name__}: {obj!r}")


def dumps(doc: Any) -> bytes:
    return orjson.dumps(doc, default=encodeDefault, option=orjson.OPT_INDENT_2)


def _when(record: Mapping):
    return parseTimestamp(record.get("timestamp")) or EPOCH


def _plain(record: Mapping) -> dict[str, Any]:
    """Copy a record into JSON friendly form (enum sides become their names)."""
    return {k: (v.name if isinstance(v, Enum) else v) for k, v in record.items()}


@dataclass
class TradeStore:
    path: pathlib.Path | str = "trades.json"
    doc: dict[str, Any] = field(init=False)

    def __post_init__(self):
        self.path = pathlib.Path(self.path)
        self.doc = self._read()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            now = nowISO()
            logger.info("Creating new trade store at {}", self.path)
            return {"trades": [], "settings": {"createdAt": now, "lastUpdated": now}}

        try:
            doc = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            raise StoreError(f"Failed to read trade store {self.path}: {e}") from e

        if not isinstance(doc, dict) or not isinstance(doc.get("trades"), list):
            raise StoreError(f"Trade store {self.path} has no trade list")

        doc.setdefault("settings", {})
        logger.info("Loaded {} trades from {}", len(doc["trades"]), self.path)
        return doc

    def _write(self) -> None:
        self.doc["settings"]["lastUpdated"] = nowISO()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_bytes(dumps(self.doc))
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreError(f"Failed to write trade store {self.path}: {e}") from e

    @property
    def trades(self) -> list[dict[str, Any]]:
        return self.doc["trades"]

    def add_trade(self, record: Mapping[str, Any]) -> dict[str, Any]:
        trade = {"id": tradeId(), **_plain(record), "createdAt": nowISO()}
        self.trades.append(trade)
        self._write()

        logger.info(
            "[{}] Stored {} trade {}", trade.get("symbol"), trade.get("side"), trade["id"]
        )
        return trade

    def add_manual_trade(
        self,
        symbol: str,
        side: Side | str,
        quantity,
        price,
        commission=0,
        commissionAsset: str = "",
        timestamp=None,
    ) -> dict[str, Any]:
        """Record a position entered by hand instead of from an exchange fill."""
        if isinstance(side, Side):
            side = side.name

        side = str(side).upper()
        if side not in Side.__members__:
            raise ValueError(f"Unknown trade side: {side}")

        if not decimalOrZero(quantity):
            raise ValueError(f"Manual trade quantity must be positive, got: {quantity}")

        return self.add_trade(
            {
                "symbol": symbol.upper(),
                "side": side,
                "quantity": str(quantity),
                "price": str(price),
                "effectivePrice": str(price),
                "commission": str(commission),
                "commissionAsset": commissionAsset,
                "timestamp": timestamp or nowISO(),
                "success": True,
                "isManual": True,
            }
        )

    def get_trades(
        self,
        symbol: str | None = None,
        side: str | None = None,
        success: bool | None = None,
        start=None,
        end=None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Filtered trades, newest first."""
        got: Iterable[dict[str, Any]] = self.trades

        if symbol:
            got = [t for t in got if str(t.get("symbol", "")).lower() == symbol.lower()]

        if side:
            got = [t for t in got if str(t.get("side", "")).lower() == side.lower()]

        if success is not None:
            got = [t for t in got if t.get("success") is success]

        if start is not None:
            if (begin := parseTimestamp(start)) is None:
                raise ValueError(f"Unusable start time: {start}")

            got = [t for t in got if _when(t) >= begin]

        if end is not None:
            if (finish := parseTimestamp(end)) is None:
                raise ValueError(f"Unusable end time: {end}")

            got = [t for t in got if _when(t) <= finish]

        ordered = sorted(got, key=_when, reverse=True)
        if limit:
            return ordered[:limit]

        return ordered

    def load_trades(self) -> list[dict[str, Any]]:
        """Every stored record, oldest first (the engine's trade loader)."""
        return sorted(self.trades, key=_when)

    def get_trade(self, id: str) -> dict[str, Any] | None:
        for trade in self.trades:
            if trade.get("id") == id:
                return trade

        return None

    def update_trade(self, id: str, changes: Mapping[str, Any]) -> dict[str, Any] | None:
        if not (trade := self.get_trade(id)):
            return None

        trade.update(_plain(changes))
        trade["id"] = id
        trade["updatedAt"] = nowISO()
        self._write()
        return trade

    def delete_trade(self, id: str) -> dict[str, Any] | None:
        if not (trade := self.get_trade(id)):
            return None

        self.trades.remove(trade)
        self._write()
        return trade

    def clear(self) -> None:
        self.doc["trades"] = []
        self._write()
        logger.info("Cleared all trades from {}", self.path)

    def stats(self) -> dict[str, Any]:
        good = self.get_trades(success=True)
        failed = [t for t in self.trades if t.get("success") is not True]
        total = len(good) + len(failed)

        return dict(
            total_trades=len(good),
            failed_trades=len(failed),
            success_rate=round(len(good) / total * 100, 2) if total else 0,
            buy_trades=sum(1 for t in good if str(t.get("side")).upper() == "BUY"),
            sell_trades=sum(1 for t in good if str(t.get("side")).upper() == "SELL"),
            unique_symbols=len({t.get("symbol") for t in good}),
            total_volume=sum((decimalOrZero(t.get("quantity")) for t in good), Decimal(0)),
            oldest=good[-1].get("timestamp") if good else None,
            newest=good[0].get("timestamp") if good else None,
        )

    def export_trades(self, path: pathlib.Path | str) -> int:
        trades = self.get_trades()
        doc = dict(trades=trades, exportedAt=nowISO(), version=EXPORT_VERSION)

        try:
            pathlib.Path(path).write_bytes(dumps(doc))
        except OSError as e:
            raise StoreError(f"Failed to export trades to {path}: {e}") from e

        logger.info("Exported {} trades to {}", len(trades), path)
        return len(trades)

    def import_trades(self, path: pathlib.Path | str) -> int:
        """Append every trade in an export file, each under a fresh id."""
        try:
            doc = orjson.loads(pathlib.Path(path).read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            raise StoreError(f"Failed to read import file {path}: {e}") from e

        if not isinstance(doc, dict) or not isinstance(doc.get("trades"), list):
            raise StoreError(f"Invalid import file format: {path}")

        now = nowISO()
        imported = [
            {**trade, "id": tradeId(), "importedAt": now}
            for trade in doc["trades"]
            if isinstance(trade, dict)
        ]

        self.trades.extend(imported)
        self._write()

        logger.info("Imported {} trades from {}", len(imported), path)
        return len(imported)

    def info(self) -> dict[str, Any]:
        exists = self.path.exists()
        stat = self.path.stat() if exists else None

        return dict(
            path=str(self.path),
            exists=exists,
            size=stat.st_size if stat else 0,
            last_modified=arrow.get(stat.st_mtime).isoformat() if stat else None,
            trades=len(self.trades),
        )
