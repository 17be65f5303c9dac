import pytest
from fastapi.testclient import TestClient

from stock_ledger.config import Settings
from stock_ledger.database import LedgerStore
from stock_ledger.main import create_app
from stock_ledger.reporting import ReportingEngine
from stock_ledger.trading import TradingEngine


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def store(database_url):
    with LedgerStore(database_url) as ledger:
        yield ledger


@pytest.fixture
def trading(store):
    return TradingEngine(store)


@pytest.fixture
def reporting(store):
    return ReportingEngine(store)


@pytest.fixture
def alice(trading):
    return trading.create_user("alice").unwrap()


@pytest.fixture
def aapl(trading):
    return trading.register_stock("AAPL", "Apple Inc.", 150.0, 1000).unwrap()


@pytest.fixture
def client(database_url):
    settings = Settings(DATABASE_URL=database_url, PRICE_UPDATES_ENABLED=False)
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


class FixedFactor:
    """Stand-in for random.Random that always draws the same factor."""

    def __init__(self, factor):
        self.factor = factor

    def uniform(self, low, high):
        return self.factor


@pytest.fixture
def fixed_factor():
    return FixedFactor
