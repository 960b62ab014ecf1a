import datetime
from decimal import Decimal as D

import pytest

from tradebook.ledger import LotLedger, SymbolLedger
from tradebook.trade import Side, Trade

EXAMPLE_DATE = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)


def trade(side, qty, price, symbol="TEST", commission=0, minutes=0, **kwargs):
    price = D(price)
    effective = kwargs.pop("effective", price)
    return Trade(
        symbol=symbol,
        side=Side[side],
        quantity=D(qty),
        price=price,
        effective_price=effective,
        commission=D(commission),
        commission_value=D(commission),
        timestamp=EXAMPLE_DATE + datetime.timedelta(minutes=minutes),
        **kwargs,
    )


def test_buy_creates_lot():
    book = SymbolLedger("TEST")
    assert book.apply(trade("BUY", 10, 10)) is None

    state = book.snapshot()
    assert len(state.lots) == 1
    assert state.total_quantity == 10
    assert state.total_cost == 100
    assert state.average_price == 10
    assert state.realized_pnl == 0
    assert state.is_open


def test_fifo_partial_consumption():
    book = SymbolLedger("TEST")
    book.apply(trade("BUY", 10, 10, minutes=0))
    book.apply(trade("BUY", 5, 20, minutes=1))
    book.apply(trade("SELL", 12, 25, minutes=2))

    state = book.snapshot()

    # 10 @ 10 fully consumed, 2 of 5 @ 20 consumed: basis 140, proceeds 300
    assert state.realized_pnl == 160
    assert state.total_quantity == 3
    assert state.total_cost == 60
    assert state.average_price == 20
    assert [(lot.quantity, lot.unit_cost) for lot in state.lots] == [(D(3), D(20))]
    assert not book.validate()


def test_sell_everything_flattens():
    book = SymbolLedger("TEST")
    book.apply(trade("BUY", "0.1", "3"))
    book.apply(trade("BUY", "0.2", "3"))
    book.apply(trade("SELL", "0.3", "4"))

    state = book.snapshot()
    assert state.total_quantity == 0
    assert state.total_cost == 0
    assert state.average_price == 0
    assert state.lots == ()
    assert state.realized_pnl == D("0.3")
    assert not state.is_open


def test_oversell_refused():
    book = SymbolLedger("TEST")
    book.apply(trade("BUY", 1, 100, commission=1))

    diagnostic = book.apply(trade("SELL", 2, 150, commission=5))
    assert diagnostic is not None
    assert diagnostic.kind == "oversell"
    assert diagnostic.symbol == "TEST"

    state = book.snapshot()
    assert state.total_quantity == 1
    assert state.total_cost == 100
    assert state.realized_pnl == 0

    # a refused trade contributes nothing, commission included
    assert state.total_commission == 1
    assert state.trade_count == 1


def test_sell_with_nothing_open():
    ledger = LotLedger.replay([trade("SELL", 1, 10)])
    assert len(ledger.diagnostics) == 1
    assert ledger.snapshot()["TEST"].total_quantity == 0


def test_commission_is_not_in_lots():
    book = SymbolLedger("TEST")
    book.apply(trade("BUY", 1, 100, commission=3))
    book.apply(trade("SELL", 1, 110, commission=4))

    state = book.snapshot()
    assert state.realized_pnl == 10
    assert state.total_commission == 7


def test_effective_price_is_basis():
    book = SymbolLedger("TEST")
    book.apply(trade("BUY", 2, 100, effective=D(101)))
    book.apply(trade("SELL", 1, 120, effective=D(119)))

    state = book.snapshot()
    assert state.realized_pnl == 18
    assert state.total_cost == 101

    # invested capital is measured at raw execution price
    assert state.total_invested == 200


def test_trade_count_and_times():
    book = SymbolLedger("TEST")
    book.apply(trade("BUY", 1, 1, minutes=0))
    book.apply(trade("BUY", 1, 1, minutes=5))
    book.apply(trade("SELL", 1, 1, minutes=9))

    state = book.snapshot()
    assert state.trade_count == 3
    assert state.first_trade_at == EXAMPLE_DATE
    assert state.last_trade_at == EXAMPLE_DATE + datetime.timedelta(minutes=9)


def test_lots_keep_origin():
    book = SymbolLedger("TEST")
    book.apply(trade("BUY", 2, 10, source_id="abc"))
    book.apply(trade("SELL", 1, 10))

    (lot,) = book.snapshot().lots
    assert lot.origin_trade_id == "abc"
    assert lot.opened_at == EXAMPLE_DATE
    assert lot.quantity == 1


def test_snapshots_are_independent():
    book = SymbolLedger("TEST")
    book.apply(trade("BUY", 2, 10))
    before = book.snapshot()

    book.apply(trade("SELL", 1, 10))
    assert before.lots[0].quantity == 2
    assert before.total_quantity == 2


def test_replay_groups_symbols():
    ledger = LotLedger.replay(
        [
            trade("BUY", 1, 10, symbol="AAA"),
            trade("BUY", 2, 20, symbol="BBB"),
            trade("SELL", 1, 30, symbol="AAA"),
        ]
    )

    states = ledger.snapshot()
    assert set(states) == {"AAA", "BBB"}
    assert states["AAA"].realized_pnl == 20
    assert not states["AAA"].is_open
    assert states["BBB"].total_quantity == 2
    assert not ledger.diagnostics
    assert not ledger.validate()


def test_never_negative_inventory():
    sides = ["BUY", "SELL", "SELL", "BUY", "SELL", "SELL", "SELL", "BUY", "BUY", "SELL"]
    qtys = [3, 1, 4, 2, 2, 2, 1, 5, 1, 6]
    trades = [
        trade(side, qty, 10 + idx, minutes=idx)
        for idx, (side, qty) in enumerate(zip(sides, qtys))
    ]

    book = SymbolLedger("TEST")
    for t in trades:
        book.apply(t)
        assert book.total_quantity >= 0
        assert not book.validate()


def test_wrong_symbol_refused():
    book = SymbolLedger("TEST")
    with pytest.raises(ValueError):
        book.apply(trade("BUY", 1, 10, symbol="OTHER"))

    assert not book.lots
