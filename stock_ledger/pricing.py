"""Periodic price mutation.

``update_stock_prices`` nudges every stock by a random factor in
[0.95, 1.05] and appends one history row per stock. Each stock is handled in
its own transaction, so a failure on one stock leaves the others untouched.
``PriceUpdater`` runs it on a background thread until stopped.
"""
import logging
import random
import threading
from decimal import Decimal
from typing import Optional

from sqlalchemy import select

from .config import MAX_PRICE, MIN_PRICE, PRICE_CHANGE_RANGE
from .database import LedgerStore, get_stock, insert
from .models import Stock, StockHistory, utcnow
from .money import to_decimal

logger = logging.getLogger(__name__)


def next_price(current_price, factor: float) -> Decimal:
    """Apply factor, round to cents, then clamp into [MIN_PRICE, MAX_PRICE]."""
    new_price = to_decimal(Decimal(str(current_price)) * Decimal(str(factor)))
    return max(MIN_PRICE, min(MAX_PRICE, new_price))


def update_stock_price(store: LedgerStore, stock_id: int, factor: float) -> Optional[Decimal]:
    with store.atomic() as session:
        stock = get_stock(session, stock_id, for_update=True)
        if stock is None:
            return None
        new_price = next_price(stock.current_price, factor)
        stock.current_price = new_price
        insert(session, StockHistory(stock_id=stock.id, price=new_price, recorded_at=utcnow()))
        return new_price


def update_stock_prices(store: LedgerStore, rng: Optional[random.Random] = None) -> int:
    """Run one price cycle over all stocks; returns how many were updated."""
    rng = rng or random
    low, high = PRICE_CHANGE_RANGE

    with store.session() as session:
        stock_ids = session.execute(select(Stock.id).order_by(Stock.id)).scalars().all()

    updated = 0
    for stock_id in stock_ids:
        try:
            if update_stock_price(store, stock_id, rng.uniform(low, high)) is not None:
                updated += 1
        except Exception:
            logger.exception(f"Price update failed for stock {stock_id}")

    logger.info(f"Stock prices updated at {utcnow().isoformat()} ({updated}/{len(stock_ids)} stocks)")
    return updated


class PriceUpdater:
    """Background thread that runs a price cycle every ``interval`` seconds."""

    def __init__(self, store: LedgerStore, interval: float = 300.0, rng: Optional[random.Random] = None):
        self.store = store
        self.interval = interval
        self.rng = rng
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="price-updater", daemon=True)
        self._thread.start()
        logger.info(f"Price updater started (every {self.interval:.0f}s)")

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Price updater did not stop within the timeout")
                return
            self._thread = None
        logger.info("Price updater stopped")

    def _loop(self):
        while not self._stop_event.wait(self.interval):
            try:
                update_stock_prices(self.store, self.rng)
            except Exception:
                logger.exception("Unhandled error in price update cycle")
