"""Trading engine: the state transitions that move cash and shares.

Each public method builds a unit of work and hands it to ``LedgerStore.run``.
Inside the unit the user row is locked before the stock row, all preconditions
are checked against that freshly read state, and only then are rows written.
A failed precondition returns a failure ``Result`` and the store rolls back.
"""
import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from .config import INITIAL_BALANCE, MAX_LOAN_AMOUNT
from .database import (
    LedgerStore,
    conditional_update,
    get_holding,
    get_stock,
    get_stock_by_symbol,
    get_user,
    get_user_by_username,
    insert,
)
from .errors import (
    DuplicateKey,
    DuplicateSymbol,
    DuplicateUsername,
    InsufficientFunds,
    InsufficientHoldings,
    InsufficientSupply,
    InvalidArgument,
    LimitExceeded,
    Result,
    StockNotFound,
    UserNotFound,
)
from .models import Holding, Stock, StockHistory, Transaction, TransactionType, User, utcnow
from .money import parse_amount
from .schemas import StockOut, TransactionOut, UserOut

logger = logging.getLogger(__name__)


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


# ---------------- Holding Helpers ---------------- #
def add_to_holding(session: Session, user_id: int, stock_id: int, quantity: int, price: Decimal) -> Holding:
    """Upsert the (user, stock) holding, blending the buy into the average cost."""
    holding = get_holding(session, user_id, stock_id, for_update=True)
    if holding:
        new_quantity = holding.quantity + quantity
        total_cost = (holding.average_buy_price * holding.quantity) + (price * quantity)
        holding.average_buy_price = total_cost / new_quantity
        holding.quantity = new_quantity
    else:
        holding = Holding(user_id=user_id, stock_id=stock_id, quantity=quantity, average_buy_price=price)
        session.add(holding)
    session.flush()
    return holding


def remove_from_holding(session: Session, holding: Holding, quantity: int):
    """Decrease a holding; the row is deleted when nothing is left. Average price stays."""
    new_quantity = holding.quantity - quantity
    if new_quantity == 0:
        session.delete(holding)
    else:
        holding.quantity = new_quantity
    session.flush()


class TradingEngine:
    def __init__(self, store: LedgerStore):
        self.store = store

    # ---------------- Registration ---------------- #
    def register_stock(self, symbol: str, name: str, current_price, available_quantity: int) -> Result[StockOut]:
        symbol = (symbol or "").strip()
        name = (name or "").strip()
        price = parse_amount(current_price)

        if not symbol or not name:
            return Result.failure(InvalidArgument("Stock symbol and name are required"))
        if len(symbol) > 10 or len(name) > 128:
            return Result.failure(InvalidArgument("Stock symbol or name is too long"))
        if price is None or price <= 0:
            return Result.failure(InvalidArgument("Stock price must be positive"))
        if not isinstance(available_quantity, int) or isinstance(available_quantity, bool) or available_quantity < 0:
            return Result.failure(InvalidArgument("Available quantity must be a non-negative integer"))

        def unit(session: Session) -> Result[StockOut]:
            if get_stock_by_symbol(session, symbol):
                return Result.failure(DuplicateSymbol(symbol))

            now = utcnow()
            stock = Stock(
                symbol=symbol,
                name=name,
                current_price=price,
                available_quantity=available_quantity,
                created_at=now,
            )
            stock_id = insert(session, stock)
            # Initial price is the first history record
            insert(session, StockHistory(stock_id=stock_id, price=price, recorded_at=now))
            return Result.success(StockOut.model_validate(stock))

        result = self.store.run(unit)
        if isinstance(result.error, DuplicateKey) and not isinstance(result.error, DuplicateSymbol):
            result = Result.failure(DuplicateSymbol(symbol))
        if result.ok:
            logger.info(f"Registered stock {symbol} at ${price:.2f} with {available_quantity} shares")
        return result

    def create_user(self, username: str) -> Result[UserOut]:
        username = (username or "").strip()
        if not username:
            return Result.failure(InvalidArgument("Username is required"))
        if len(username) > 50:
            return Result.failure(InvalidArgument("Username must be at most 50 characters"))

        def unit(session: Session) -> Result[UserOut]:
            if get_user_by_username(session, username):
                return Result.failure(DuplicateUsername(username))

            user = User(
                username=username,
                balance=INITIAL_BALANCE,
                loan_amount=Decimal("0.00"),
                created_at=utcnow(),
            )
            insert(session, user)
            return Result.success(UserOut.model_validate(user))

        result = self.store.run(unit)
        if isinstance(result.error, DuplicateKey) and not isinstance(result.error, DuplicateUsername):
            result = Result.failure(DuplicateUsername(username))
        if result.ok:
            logger.info(f"Created user {username} with ${INITIAL_BALANCE:.2f} initial balance")
        return result

    # ---------------- Loans ---------------- #
    def issue_loan(self, user_id: int, amount) -> Result[UserOut]:
        def unit(session: Session) -> Result[UserOut]:
            user = get_user(session, user_id, for_update=True)
            if user is None:
                return Result.failure(UserNotFound(user_id))

            loan = parse_amount(amount)
            if loan is None or loan <= 0:
                return Result.failure(InvalidArgument("Loan amount must be positive"))

            if user.loan_amount + loan > MAX_LOAN_AMOUNT:
                return Result.failure(LimitExceeded(
                    f"Total loan cannot exceed {MAX_LOAN_AMOUNT:,.0f}. Outstanding: ${user.loan_amount:.2f}"
                ))

            user.balance = user.balance + loan
            user.loan_amount = user.loan_amount + loan
            session.flush()
            logger.info(f"Issued loan of ${loan:.2f} to {user.username}, total loan ${user.loan_amount:.2f}")
            return Result.success(UserOut.model_validate(user))

        return self.store.run(unit)

    # ---------------- Trades ---------------- #
    def execute_buy(self, user_id: int, stock_id: int, quantity: int) -> Result[TransactionOut]:
        def unit(session: Session) -> Result[TransactionOut]:
            user = get_user(session, user_id, for_update=True)
            if user is None:
                return Result.failure(UserNotFound(user_id))
            stock = get_stock(session, stock_id, for_update=True)
            if stock is None:
                return Result.failure(StockNotFound(stock_id))

            if not _is_positive_int(quantity):
                return Result.failure(InvalidArgument("Quantity must be a positive integer"))

            if stock.available_quantity < quantity:
                return Result.failure(InsufficientSupply(
                    f"Not enough stock available. Available: {stock.available_quantity}, requested: {quantity}"
                ))

            price = stock.current_price
            total_cost = price * quantity
            if user.balance < total_cost:
                return Result.failure(InsufficientFunds(
                    f"Insufficient funds. Balance: ${user.balance:.2f}, Required: ${total_cost:.2f}"
                ))

            # Guarded writes: the row must still satisfy the precondition when it is updated
            if not conditional_update(session, User, user.id,
                                      {"balance": User.balance - total_cost},
                                      User.balance >= total_cost):
                return Result.failure(InsufficientFunds(f"Insufficient funds. Required: ${total_cost:.2f}"))
            if not conditional_update(session, Stock, stock.id,
                                      {"available_quantity": Stock.available_quantity - quantity},
                                      Stock.available_quantity >= quantity):
                return Result.failure(InsufficientSupply(f"Not enough stock available for {quantity} shares"))

            transaction = Transaction(
                user_id=user.id,
                stock_id=stock.id,
                quantity=quantity,
                price=price,
                type=TransactionType.BUY,
                timestamp=utcnow(),
            )
            insert(session, transaction)
            add_to_holding(session, user.id, stock.id, quantity, price)

            logger.info(f"Trade executed: {user.username} bought {quantity} {stock.symbol} at {price}, Total: ${total_cost:.2f}")
            return Result.success(TransactionOut.model_validate(transaction))

        return self.store.run(unit)

    def execute_sell(self, user_id: int, stock_id: int, quantity: int) -> Result[TransactionOut]:
        def unit(session: Session) -> Result[TransactionOut]:
            user = get_user(session, user_id, for_update=True)
            if user is None:
                return Result.failure(UserNotFound(user_id))
            stock = get_stock(session, stock_id, for_update=True)
            if stock is None:
                return Result.failure(StockNotFound(stock_id))

            if not _is_positive_int(quantity):
                return Result.failure(InvalidArgument("Quantity must be a positive integer"))

            holding = get_holding(session, user.id, stock.id, for_update=True)
            held = holding.quantity if holding else 0
            if held < quantity:
                return Result.failure(InsufficientHoldings(
                    f"Not enough shares to sell. You have {held} shares of {stock.symbol}"
                ))

            price = stock.current_price
            total_value = price * quantity

            conditional_update(session, User, user.id, {"balance": User.balance + total_value})
            conditional_update(session, Stock, stock.id,
                               {"available_quantity": Stock.available_quantity + quantity})

            transaction = Transaction(
                user_id=user.id,
                stock_id=stock.id,
                quantity=quantity,
                price=price,
                type=TransactionType.SELL,
                timestamp=utcnow(),
            )
            insert(session, transaction)
            remove_from_holding(session, holding, quantity)

            logger.info(f"Trade executed: {user.username} sold {quantity} {stock.symbol} at {price}, Total: ${total_value:.2f}")
            return Result.success(TransactionOut.model_validate(transaction))

        return self.store.run(unit)
