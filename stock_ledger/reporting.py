"""Read-only views over the ledger: user and stock reports, leaderboards, history.

Reports read without locking and may lag concurrent trades slightly; the
accounting itself matches the trading engine (current price times quantity for
value, average buy price for cost basis).
"""
from decimal import Decimal
from typing import List

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import INITIAL_BALANCE
from .database import LedgerStore, get_user
from .errors import InvalidArgument, UserNotFound
from .models import Holding, Stock, StockHistory, Transaction, User
from .schemas import PriceHistoryOut, StockReport, UserReport


def _check_limit(limit: int):
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise InvalidArgument("Limit must be a positive integer")


def build_user_report(session: Session, user: User) -> UserReport:
    holdings = session.execute(
        select(Holding.quantity, Holding.average_buy_price, Stock.current_price)
        .join(Stock, Holding.stock_id == Stock.id)
        .where(Holding.user_id == user.id)
    ).all()

    portfolio_value = Decimal("0")
    total_profit_loss = Decimal("0")
    for quantity, average_buy_price, current_price in holdings:
        current_value = current_price * quantity
        cost_basis = average_buy_price * quantity
        portfolio_value += current_value
        total_profit_loss += current_value - cost_basis

    net_worth = user.balance + portfolio_value - user.loan_amount
    profit_loss_percentage = (net_worth - INITIAL_BALANCE) / INITIAL_BALANCE * 100

    return UserReport(
        user_id=user.id,
        username=user.username,
        initial_balance=float(INITIAL_BALANCE),
        current_balance=float(user.balance),
        loan_amount=float(user.loan_amount),
        portfolio_value=float(portfolio_value),
        total_profit_loss=float(total_profit_loss),
        profit_loss_percentage=float(profit_loss_percentage),
    )


def _stock_report_query():
    start_price = (
        select(StockHistory.price)
        .where(StockHistory.stock_id == Stock.id)
        .order_by(StockHistory.recorded_at.asc(), StockHistory.id.asc())
        .limit(1)
        .correlate(Stock)
        .scalar_subquery()
    )
    total_volume = (
        select(func.count(Transaction.id))
        .where(Transaction.stock_id == Stock.id)
        .correlate(Stock)
        .scalar_subquery()
    )
    return select(
        Stock.id,
        Stock.symbol,
        Stock.name,
        Stock.current_price,
        start_price.label("start_price"),
        total_volume.label("total_volume"),
    )


def _stock_report(row) -> StockReport:
    current_price = Decimal(str(row.current_price))
    # Every stock gets a history row at registration; fall back for rows created elsewhere
    start_price = Decimal(str(row.start_price)) if row.start_price is not None else current_price
    price_change = current_price - start_price
    price_change_percentage = price_change / start_price * 100

    return StockReport(
        stock_id=row.id,
        symbol=row.symbol,
        name=row.name,
        start_price=float(start_price),
        current_price=float(current_price),
        price_change=float(price_change),
        price_change_percentage=float(price_change_percentage),
        total_volume=row.total_volume or 0,
    )


class ReportingEngine:
    def __init__(self, store: LedgerStore):
        self.store = store

    def get_user_report(self, user_id: int) -> UserReport:
        with self.store.session() as session:
            user = get_user(session, user_id)
            if user is None:
                raise UserNotFound(user_id)
            return build_user_report(session, user)

    def get_top_users(self, limit: int = 5) -> List[UserReport]:
        _check_limit(limit)
        with self.store.session() as session:
            users = session.execute(select(User).order_by(User.id)).scalars().all()
            reports = [build_user_report(session, user) for user in users]

        reports.sort(key=lambda report: report.profit_loss_percentage, reverse=True)
        return reports[:limit]

    def get_stock_report(self, limit: int = 10) -> List[StockReport]:
        """Stocks, most recently registered first."""
        _check_limit(limit)
        with self.store.session() as session:
            rows = session.execute(_stock_report_query().order_by(Stock.id.desc()).limit(limit)).all()
        return [_stock_report(row) for row in rows]

    def get_top_stocks(self, limit: int = 5) -> List[StockReport]:
        _check_limit(limit)
        with self.store.session() as session:
            rows = session.execute(_stock_report_query().order_by(Stock.id)).all()

        reports = [_stock_report(row) for row in rows]
        reports.sort(key=lambda report: report.price_change_percentage, reverse=True)
        return reports[:limit]

    def get_stock_history(self, stock_id: int, limit: int = 100) -> List[PriceHistoryOut]:
        """Price history for a stock, most recent first. Unknown stocks have none."""
        _check_limit(limit)
        with self.store.session() as session:
            history = session.execute(
                select(StockHistory)
                .where(StockHistory.stock_id == stock_id)
                .order_by(StockHistory.recorded_at.desc(), StockHistory.id.desc())
                .limit(limit)
            ).scalars().all()
            return [PriceHistoryOut.model_validate(record) for record in history]
