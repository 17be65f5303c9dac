from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings

# ---------------- Ledger Constants ---------------- #
INITIAL_BALANCE = Decimal("10000.00")
MAX_LOAN_AMOUNT = Decimal("100000.00")
MIN_PRICE = Decimal("1.00")
MAX_PRICE = Decimal("100.00")
PRICE_CHANGE_RANGE = (0.95, 1.05)


class Settings(BaseSettings):
    DATABASE_URL: str = "mysql+mysqlconnector://root:@localhost/stock_exchange"
    PRICE_UPDATE_INTERVAL: float = 300.0
    PRICE_UPDATES_ENABLED: bool = True
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    model_config = {"env_prefix": "STOCK_LEDGER_"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
