import datetime
from decimal import Decimal as D

from tradebook.fees import QuoteAdjustedPolicy
from tradebook.trade import (
    EPOCH,
    Rejected,
    Side,
    Trade,
    decimalOrZero,
    normalize,
    normalize_all,
    parseTimestamp,
)

T0 = "2024-01-01T00:00:00Z"
T1 = "2024-01-02T00:00:00Z"
T2 = "2024-01-03T00:00:00Z"


def rec(**kwargs):
    base = dict(
        symbol="BTCUSDT",
        side="BUY",
        quantity="1",
        price="50000",
        timestamp=T0,
        success=True,
    )
    base.update(kwargs)
    return base


def test_decimal_or_zero():
    assert decimalOrZero("1.5") == D("1.5")
    assert decimalOrZero(0.1) == D("0.1")
    assert decimalOrZero(3) == D(3)
    assert decimalOrZero(" 2 ") == D(2)


def test_decimal_or_zero_garbage():
    assert decimalOrZero("abc") == 0
    assert decimalOrZero(None) == 0
    assert decimalOrZero("NaN") == 0
    assert decimalOrZero("Infinity") == 0
    assert decimalOrZero(float("inf")) == 0
    assert decimalOrZero("-5") == 0
    assert decimalOrZero(True) == 0
    assert decimalOrZero([1]) == 0


def test_parse_timestamp():
    want = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
    assert parseTimestamp(T0) == want
    assert parseTimestamp(1704067200) == want
    assert parseTimestamp("1704067200") == want
    assert parseTimestamp(1704067200000) == want
    assert parseTimestamp(want) == want


def test_parse_timestamp_garbage():
    assert parseTimestamp(None) is None
    assert parseTimestamp("") is None
    assert parseTimestamp("not a time") is None


def test_normalize_basic():
    t = normalize(rec(commission="0.001", commissionAsset="btc", orderId=42))
    assert isinstance(t, Trade)
    assert t.symbol == "BTCUSDT"
    assert t.side is Side.BUY
    assert t.quantity == D(1)
    assert t.price == D(50000)
    assert t.effective_price == D(50000)
    assert t.commission == D("0.001")
    assert t.commission_asset == "BTC"
    assert t.commission_value == D(50)
    assert t.source_id == "42"
    assert t.is_buy
    assert t.notional == D(50000)


def test_normalize_side_case_insensitive():
    assert normalize(rec(side="sell")).side is Side.SELL
    assert normalize(rec(side=Side.SELL)).side is Side.SELL


def test_normalize_symbol_upper():
    assert normalize(rec(symbol="ethusdt")).symbol == "ETHUSDT"


def test_normalize_rejections():
    assert normalize(rec(side="HOLD")) == Rejected(rec(side="HOLD"), "side")
    assert normalize(rec(symbol="")).reason == "symbol"
    assert normalize(rec(quantity="0")).reason == "quantity"
    assert normalize(rec(quantity="lots")).reason == "quantity"
    assert normalize(rec(quantity="-3")).reason == "quantity"
    assert normalize(rec(success=False)).reason == "unsuccessful"
    assert normalize(rec(success="true")).reason == "unsuccessful"
    assert normalize("BTCUSDT BUY 1").reason == "record"


def test_normalize_missing_success_rejected():
    r = rec()
    del r["success"]
    assert normalize(r).reason == "unsuccessful"


def test_normalize_coerces_bad_numbers():
    t = normalize(rec(price="oops", commission="NaN"))
    assert t.price == 0
    assert t.effective_price == 0
    assert t.commission == 0


def test_normalize_effective_price_recorded():
    t = normalize(rec(side="SELL", effectivePrice="49990"))
    assert t.effective_price == D(49990)
    assert t.price == D(50000)


def test_normalize_effective_price_from_policy():
    r = rec(side="SELL", quantity="2", commission="10", commissionAsset="USDT")
    assert normalize(r).effective_price == D(50000)
    assert normalize(r, QuoteAdjustedPolicy()).effective_price == D(49995)


def test_normalize_missing_timestamp():
    r = rec()
    del r["timestamp"]
    assert normalize(r).timestamp == EPOCH


def test_normalize_manual_flag():
    assert normalize(rec(isManual=True)).is_manual
    assert not normalize(rec()).is_manual
    assert not normalize(rec(isManual="false")).is_manual
    assert not normalize(rec(is_manual=1)).is_manual


def test_normalize_all_orders_by_symbol_then_time():
    trades, rejected = normalize_all(
        [
            rec(symbol="ETHUSDT", timestamp=T1),
            rec(timestamp=T2),
            rec(timestamp=T0),
            rec(symbol="ETHUSDT", timestamp=T0),
        ]
    )

    assert not rejected
    assert [(t.symbol, t.timestamp.day) for t in trades] == [
        ("BTCUSDT", 1),
        ("BTCUSDT", 3),
        ("ETHUSDT", 1),
        ("ETHUSDT", 2),
    ]


def test_normalize_all_stable_ties():
    trades, _ = normalize_all(
        [
            rec(quantity="1", sourceId="a"),
            rec(quantity="2", sourceId="b"),
            rec(quantity="3", sourceId="c"),
        ]
    )

    assert [t.source_id for t in trades] == ["a", "b", "c"]


def test_normalize_all_duplicates():
    trades, rejected = normalize_all(
        [rec(sourceId="x"), rec(sourceId="x"), rec(), rec()]
    )

    # records without an id can't be deduplicated
    assert len(trades) == 3
    assert [r.reason for r in rejected] == ["duplicate"]


def test_normalize_all_collects_rejections():
    trades, rejected = normalize_all([rec(), rec(side="?"), None, rec(success=False)])
    assert len(trades) == 1
    assert sorted(r.reason for r in rejected) == ["record", "side", "unsuccessful"]
