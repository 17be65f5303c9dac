from datetime import datetime

from pydantic import BaseModel

from .models import TransactionType


class LedgerModel(BaseModel):
    model_config = {"from_attributes": True}


class UserOut(LedgerModel):
    id: int
    username: str
    balance: float
    loan_amount: float
    created_at: datetime


class StockOut(LedgerModel):
    id: int
    symbol: str
    name: str
    current_price: float
    available_quantity: int
    created_at: datetime


class PriceHistoryOut(LedgerModel):
    id: int
    stock_id: int
    price: float
    recorded_at: datetime


class TransactionOut(LedgerModel):
    id: int
    user_id: int
    stock_id: int
    quantity: int
    price: float
    type: TransactionType
    timestamp: datetime

    model_config = {"from_attributes": True, "use_enum_values": True}


class UserReport(BaseModel):
    user_id: int
    username: str
    initial_balance: float
    current_balance: float
    loan_amount: float
    portfolio_value: float
    total_profit_loss: float
    profit_loss_percentage: float


class StockReport(BaseModel):
    stock_id: int
    symbol: str
    name: str
    start_price: float
    current_price: float
    price_change: float
    price_change_percentage: float
    total_volume: int = 0


class SimulationSummary(BaseModel):
    users: int
    executed: int
    failed: int
