import datetime
from decimal import Decimal as D

from tradebook.ledger import LotLedger
from tradebook.position import aggregate, percent, ranked, reprice
from tradebook.totals import PortfolioTotals, fold
from tradebook.trade import normalize_all


def rec(symbol, side, qty, price, day=1, **kwargs):
    got = dict(
        symbol=symbol,
        side=side,
        quantity=str(qty),
        price=str(price),
        timestamp=datetime.datetime(2024, 1, day, tzinfo=datetime.timezone.utc),
        success=True,
    )
    got.update(kwargs)
    return got


def states(*records):
    trades, _ = normalize_all(records)
    return LotLedger.replay(trades).snapshot()


def test_percent():
    assert percent(D(5), D(50)) == 10
    assert percent(D(5), D(0)) == 0
    assert percent(D(5), D(-1)) == 0


def test_aggregate_open():
    s = states(rec("BTCUSDT", "BUY", 1, 50000, commission="10", commissionAsset="USDT"))
    p = aggregate(s["BTCUSDT"], D(55000))

    assert p.is_open
    assert p.current_price == 55000
    assert p.current_value == 55000
    assert p.unrealized_pnl == 5000
    assert p.unrealized_pnl_percent == 10
    assert p.total_commission == 10
    assert p.total_pnl == 4990
    assert p.total_pnl_percent == D("9.98")


def test_worked_example():
    s = states(
        rec("BTCUSDT", "BUY", 1, 50000, day=1),
        rec("BTCUSDT", "BUY", 1, 60000, day=2),
        rec("BTCUSDT", "SELL", "1.5", 70000, day=3, commission="10", commissionAsset="USDT"),
    )
    p = aggregate(s["BTCUSDT"], D(80000))

    assert p.realized_pnl == 25000
    assert p.total_quantity == D("0.5")
    assert p.total_cost == 30000
    assert p.average_price == 60000
    assert [(lot.quantity, lot.unit_cost) for lot in p.lots] == [(D("0.5"), D(60000))]
    assert p.current_value == 40000
    assert p.unrealized_pnl == 10000
    assert p.total_commission == 10
    assert p.total_pnl == 34990


def test_unavailable_price_marks_at_zero():
    s = states(rec("ETHUSDT", "BUY", 2, 3000))
    p = aggregate(s["ETHUSDT"], D(0))

    assert p.current_value == 0
    assert p.unrealized_pnl == -6000
    assert p.unrealized_pnl_percent == -100


def test_closed_position():
    s = states(
        rec("ETHUSDT", "BUY", 2, 3000, day=1),
        rec("ETHUSDT", "SELL", 2, 3500, day=2, commission="1"),
    )
    p = aggregate(s["ETHUSDT"], D(9999))

    assert not p.is_open
    assert p.current_value == 0
    assert p.unrealized_pnl == 0
    assert p.realized_pnl == 1000
    assert p.total_pnl == 999

    # nothing to mark
    assert reprice(p, D(1)) is p


def test_reprice_matches_aggregate():
    s = states(
        rec("SOLUSDT", "BUY", 10, 100, day=1),
        rec("SOLUSDT", "BUY", 5, 120, day=2),
        rec("SOLUSDT", "SELL", 7, 130, day=3, commission="2"),
    )
    before = aggregate(s["SOLUSDT"], D(110))

    assert reprice(before, D(150)) == aggregate(s["SOLUSDT"], D(150))


def test_ranked_order():
    s = states(
        rec("AAAUSDT", "BUY", 1, 10),
        rec("BBBUSDT", "BUY", 1, 10),
        rec("CCCUSDT", "BUY", 1, 10),
        rec("DDDUSDT", "BUY", 1, 10, day=1),
        rec("DDDUSDT", "SELL", 1, 10, day=2),
    )
    prices = {"AAAUSDT": D(12), "BBBUSDT": D(15), "CCCUSDT": D(12), "DDDUSDT": D(10)}
    got = ranked(aggregate(state, prices[sym]) for sym, state in s.items())

    assert [p.symbol for p in got] == ["BBBUSDT", "AAAUSDT", "CCCUSDT"]


def test_fold_empty():
    assert fold([]) == PortfolioTotals()


def test_fold_includes_closed_realized():
    s = states(
        rec("ETHUSDT", "BUY", 1, 3000, day=1),
        rec("ETHUSDT", "SELL", 1, 3500, day=2, commission="5"),
        rec("BTCUSDT", "BUY", 1, 50000, commission="10"),
    )
    positions = [
        aggregate(s["ETHUSDT"], D(4000)),
        aggregate(s["BTCUSDT"], D(51000)),
    ]
    totals = fold(positions)

    assert totals.open_positions == 1
    assert totals.total_value == 51000
    assert totals.total_unrealized_pnl == 1000
    assert totals.total_realized_pnl == 500
    assert totals.total_commission == 15
    assert totals.total_pnl == 1485
    assert totals.total_cost == 50000
    assert totals.total_pnl_percent == D("2.97")


def test_fold_order_independent():
    s = states(
        rec("AAAUSDT", "BUY", "0.3", "0.1"),
        rec("BBBUSDT", "BUY", "0.7", "0.3"),
        rec("CCCUSDT", "BUY", "1.1", "0.7"),
    )
    positions = [aggregate(state, D("0.2")) for state in s.values()]

    assert fold(positions) == fold(reversed(positions))


def test_commission_neutral_lots():
    # the same trades with and without commission differ only by the commission
    plain = states(
        rec("BTCUSDT", "BUY", 1, 100, day=1),
        rec("BTCUSDT", "SELL", 1, 110, day=2),
    )["BTCUSDT"]
    charged = states(
        rec("BTCUSDT", "BUY", 1, 100, day=1, commission="1", commissionAsset="USDT"),
        rec("BTCUSDT", "SELL", 1, 110, day=2, commission="2", commissionAsset="USDT"),
    )["BTCUSDT"]

    assert plain.realized_pnl == charged.realized_pnl == 10
    assert aggregate(charged, D(0)).total_pnl == aggregate(plain, D(0)).total_pnl - 3
