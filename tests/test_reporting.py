from decimal import Decimal

import pytest

from stock_ledger.database import get_stock
from stock_ledger.errors import InvalidArgument, UserNotFound
from stock_ledger.pricing import update_stock_prices


def _set_price(store, stock_id, price):
    with store.atomic() as session:
        get_stock(session, stock_id).current_price = Decimal(price)


def test_report_for_user_without_holdings(reporting, trading, alice):
    report = reporting.get_user_report(alice.id)
    assert report.username == "alice"
    assert report.initial_balance == 10000.0
    assert report.portfolio_value == 0.0
    assert report.total_profit_loss == 0.0
    assert report.profit_loss_percentage == 0.0

    trading.issue_loan(alice.id, 5000).unwrap()
    report = reporting.get_user_report(alice.id)
    assert report.current_balance == 15000.0
    assert report.loan_amount == 5000.0
    # Borrowed cash is offset by the outstanding loan
    assert report.profit_loss_percentage == pytest.approx(100 * (15000 - 5000 - 10000) / 10000)


def test_report_values_holdings_at_current_price(store, reporting, trading, alice):
    stock = trading.register_stock("GAIN", "Gainer", 50.0, 100).unwrap()
    trading.execute_buy(alice.id, stock.id, 20).unwrap()  # balance 9000
    _set_price(store, stock.id, "60.00")

    report = reporting.get_user_report(alice.id)
    assert report.current_balance == 9000.0
    assert report.portfolio_value == pytest.approx(1200.0)
    assert report.total_profit_loss == pytest.approx(200.0)
    assert report.profit_loss_percentage == pytest.approx(2.0)


def test_report_for_unknown_user(reporting):
    with pytest.raises(UserNotFound):
        reporting.get_user_report(12345)


def test_top_users_sorted_by_profit_loss(store, reporting, trading):
    stock = trading.register_stock("MOVE", "Mover", 10.0, 1000).unwrap()
    winner = trading.create_user("winner").unwrap()
    loser = trading.create_user("loser").unwrap()
    idle = trading.create_user("idle").unwrap()

    trading.execute_buy(winner.id, stock.id, 100).unwrap()
    _set_price(store, stock.id, "20.00")
    trading.execute_buy(loser.id, stock.id, 100).unwrap()
    _set_price(store, stock.id, "15.00")

    top = reporting.get_top_users()
    assert [report.username for report in top] == ["winner", "idle", "loser"]
    assert top[0].profit_loss_percentage == pytest.approx(5.0)
    assert top[2].profit_loss_percentage == pytest.approx(-5.0)

    assert [report.user_id for report in reporting.get_top_users(limit=1)] == [winner.id]
    assert idle.id in [report.user_id for report in reporting.get_top_users(limit=50)]


def test_stock_report_newest_first_with_volume(store, reporting, trading, alice, fixed_factor):
    first = trading.register_stock("OLD", "Old Co", 40.0, 100).unwrap()
    second = trading.register_stock("NEW", "New Co", 20.0, 100).unwrap()
    trading.execute_buy(alice.id, first.id, 2).unwrap()
    trading.execute_sell(alice.id, first.id, 1).unwrap()

    update_stock_prices(store, fixed_factor(1.05))

    reports = reporting.get_stock_report()
    assert [report.symbol for report in reports] == ["NEW", "OLD"]

    new, old = reports
    assert new.start_price == 20.0
    assert new.current_price == 21.0
    assert new.price_change == pytest.approx(1.0)
    assert new.price_change_percentage == pytest.approx(5.0)
    assert new.total_volume == 0
    assert old.total_volume == 2
    assert old.start_price == 40.0

    assert [report.stock_id for report in reporting.get_stock_report(limit=1)] == [second.id]


def test_top_stocks_sorted_by_price_change(store, reporting, trading):
    up = trading.register_stock("UP", "Up Inc", 10.0, 10).unwrap()
    flat = trading.register_stock("FLAT", "Flat Inc", 10.0, 10).unwrap()
    down = trading.register_stock("DOWN", "Down Inc", 10.0, 10).unwrap()
    _set_price(store, up.id, "12.00")
    _set_price(store, down.id, "8.00")

    top = reporting.get_top_stocks()
    assert [report.stock_id for report in top] == [up.id, flat.id, down.id]
    assert top[0].price_change_percentage == pytest.approx(20.0)
    assert top[-1].price_change_percentage == pytest.approx(-20.0)
    assert len(reporting.get_top_stocks(limit=2)) == 2


def test_stock_history_most_recent_first(store, reporting, trading, fixed_factor):
    stock = trading.register_stock("HIST", "History", 50.0, 10).unwrap()
    for _ in range(4):
        update_stock_prices(store, fixed_factor(1.02))

    history = reporting.get_stock_history(stock.id)
    assert len(history) == 5
    assert history[-1].price == 50.0
    assert [record.price for record in history] == sorted((record.price for record in history), reverse=True)
    assert len(reporting.get_stock_history(stock.id, limit=2)) == 2
    assert reporting.get_stock_history(999) == []


def test_limits_must_be_positive(reporting):
    with pytest.raises(InvalidArgument):
        reporting.get_top_users(limit=0)
    with pytest.raises(InvalidArgument):
        reporting.get_stock_report(limit=-1)
