"""Randomized trading simulation.

Creates ``trader_N`` users (reusing existing ones) and a default set of stocks
when the ledger has none, then lets every user place ``num_trades`` random
orders through the trading engine. Rejected trades are logged and skipped.
"""
import logging
import random
from typing import List, Optional

from sqlalchemy import select

from .database import LedgerStore, get_user_by_username
from .errors import DuplicateUsername
from .models import Holding, Stock
from .schemas import SimulationSummary
from .trading import TradingEngine

logger = logging.getLogger(__name__)

BUY_PROBABILITY = 0.7
MAX_SHARES_PER_TRADE = 10

DEFAULT_STOCKS = [
    ("AAPL", "Apple Inc.", 95.00, 1000),
    ("GOOGL", "Alphabet Inc.", 80.00, 500),
    ("MSFT", "Microsoft Corp.", 60.00, 800),
    ("AMZN", "Amazon.com Inc.", 45.00, 300),
    ("TSLA", "Tesla Inc.", 25.00, 600),
]


def ensure_users(store: LedgerStore, trading: TradingEngine, num_users: int) -> List[int]:
    user_ids = []
    for i in range(num_users):
        username = f"trader_{i + 1}"
        result = trading.create_user(username)
        if result.ok:
            user_ids.append(result.value.id)
        elif isinstance(result.error, DuplicateUsername):
            with store.session() as session:
                user_ids.append(get_user_by_username(session, username).id)
        else:
            logger.warning(f"Could not create simulation user {username}: {result.error}")
    return user_ids


def ensure_stocks(store: LedgerStore, trading: TradingEngine):
    with store.session() as session:
        has_stocks = session.execute(select(Stock.id).limit(1)).first() is not None
    if has_stocks:
        return

    for symbol, name, price, quantity in DEFAULT_STOCKS:
        result = trading.register_stock(symbol, name, price, quantity)
        if not result.ok:
            logger.warning(f"Could not register simulation stock {symbol}: {result.error}")


def _random_trade(store: LedgerStore, trading: TradingEngine, user_id: int, rng):
    if rng.random() < BUY_PROBABILITY:
        with store.session() as session:
            stocks = session.execute(
                select(Stock.id, Stock.available_quantity).where(Stock.available_quantity > 0)
            ).all()
        if not stocks:
            return None
        stock_id, available = rng.choice(stocks)
        quantity = rng.randint(1, min(MAX_SHARES_PER_TRADE, available))
        return trading.execute_buy(user_id, stock_id, quantity)

    with store.session() as session:
        holdings = session.execute(
            select(Holding.stock_id, Holding.quantity).where(Holding.user_id == user_id)
        ).all()
    if not holdings:
        return None
    stock_id, held = rng.choice(holdings)
    return trading.execute_sell(user_id, stock_id, rng.randint(1, held))


def run_trading_simulation(
    store: LedgerStore,
    trading: TradingEngine,
    num_users: int = 5,
    num_trades: int = 10,
    rng: Optional[random.Random] = None,
) -> SimulationSummary:
    rng = rng or random.Random()
    user_ids = ensure_users(store, trading, num_users)
    ensure_stocks(store, trading)

    executed = failed = 0
    for _ in range(num_trades):
        for user_id in user_ids:
            try:
                result = _random_trade(store, trading, user_id, rng)
            except Exception as e:
                logger.error(f"Error in trade simulation for user {user_id}: {e}")
                failed += 1
                continue
            if result is None:
                continue
            if result.ok:
                executed += 1
            else:
                failed += 1
                logger.warning(f"Simulated trade for user {user_id} rejected: {result.error}")

    logger.info(f"Simulation finished: {len(user_ids)} users, {executed} trades executed, {failed} rejected")
    return SimulationSummary(users=len(user_ids), executed=executed, failed=failed)
