import random
import threading
import time
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from stock_ledger import pricing
from stock_ledger.database import get_stock
from stock_ledger.models import StockHistory
from stock_ledger.pricing import PriceUpdater, next_price, update_stock_prices


def _history_counts(store):
    with store.session() as session:
        rows = session.execute(
            select(StockHistory.stock_id, func.count(StockHistory.id)).group_by(StockHistory.stock_id)
        ).all()
        return dict(rows)


@pytest.mark.parametrize("price, factor, expected", [
    (50.0, 1.02, Decimal("51.00")),
    (10.0, 0.95, Decimal("9.50")),
    (12.34, 1.0, Decimal("12.34")),
    (99.5, 1.05, Decimal("100.00")),
    (1.02, 0.95, Decimal("1.00")),
    (150.0, 0.95, Decimal("100.00")),
    (0.5, 1.05, Decimal("1.00")),
])
def test_next_price_rounds_and_clamps(price, factor, expected):
    assert next_price(price, factor) == expected


def test_next_price_stays_in_bounds_for_random_walks():
    rng = random.Random(42)
    price = Decimal("50.00")
    for _ in range(2000):
        price = next_price(price, rng.uniform(0.95, 1.05))
        assert Decimal("1.00") <= price <= Decimal("100.00")


def test_update_appends_one_history_row_per_stock(store, trading):
    stocks = [
        trading.register_stock("AAA", "Triple A", 99.0, 10).unwrap(),
        trading.register_stock("BBB", "Double B", 1.01, 10).unwrap(),
        trading.register_stock("CCC", "Cee", 40.0, 10).unwrap(),
    ]

    assert update_stock_prices(store, random.Random(7)) == 3
    assert update_stock_prices(store, random.Random(8)) == 3

    counts = _history_counts(store)
    assert all(counts[stock.id] == 3 for stock in stocks)

    with store.session() as session:
        for stock in stocks:
            row = get_stock(session, stock.id)
            latest = session.execute(
                select(StockHistory.price)
                .where(StockHistory.stock_id == stock.id)
                .order_by(StockHistory.recorded_at.desc(), StockHistory.id.desc())
                .limit(1)
            ).scalar_one()
            assert row.current_price == latest
            assert Decimal("1.00") <= row.current_price <= Decimal("100.00")


def test_update_moves_price_by_factor(store, trading, reporting, fixed_factor):
    stock = trading.register_stock("FIX", "Fixed Factor", 20.0, 10).unwrap()
    update_stock_prices(store, fixed_factor(1.05))

    history = reporting.get_stock_history(stock.id)
    assert [record.price for record in history] == [21.0, 20.0]


def test_failed_stock_does_not_stop_the_others(store, trading, monkeypatch):
    stocks = [
        trading.register_stock("BAD", "Broken Feed", 10.0, 10).unwrap(),
        trading.register_stock("OK1", "First Fine", 20.0, 10).unwrap(),
        trading.register_stock("OK2", "Second Fine", 30.0, 10).unwrap(),
    ]
    original = pricing.next_price
    calls = []

    def fail_first_call(current_price, factor):
        calls.append(current_price)
        if len(calls) == 1:
            raise RuntimeError("price feed unavailable")
        return original(current_price, factor)

    monkeypatch.setattr(pricing, "next_price", fail_first_call)

    assert update_stock_prices(store, random.Random(3)) == 2

    counts = _history_counts(store)
    assert counts[stocks[0].id] == 1
    assert counts[stocks[1].id] == 2
    assert counts[stocks[2].id] == 2
    with store.session() as session:
        assert get_stock(session, stocks[0].id).current_price == Decimal("10.00")


def test_update_with_no_stocks(store):
    assert update_stock_prices(store) == 0


def test_price_updater_runs_until_stopped(store, trading):
    stock = trading.register_stock("TICK", "Ticker", 30.0, 10).unwrap()
    updater = PriceUpdater(store, interval=0.01, rng=random.Random(1))

    updater.start()
    assert updater.running
    deadline = time.time() + 5
    while _history_counts(store)[stock.id] < 3 and time.time() < deadline:
        time.sleep(0.01)
    updater.stop(timeout=5)

    assert not updater.running
    stopped_at = _history_counts(store)[stock.id]
    assert stopped_at >= 3
    time.sleep(0.05)
    assert _history_counts(store)[stock.id] == stopped_at


def test_stop_timeout_keeps_tracking_the_live_thread(store, monkeypatch):
    entered = threading.Event()
    release = threading.Event()

    def slow_cycle(store, rng=None):
        entered.set()
        release.wait(5)
        return 0

    monkeypatch.setattr(pricing, "update_stock_prices", slow_cycle)
    updater = PriceUpdater(store, interval=0.01)
    updater.start()
    try:
        assert entered.wait(5)
        updater.stop(timeout=0.05)
        assert updater.running

        updater.start()
        assert sum(thread.name == "price-updater" for thread in threading.enumerate()) == 1
    finally:
        release.set()
        updater.stop(timeout=5)

    assert not updater.running
