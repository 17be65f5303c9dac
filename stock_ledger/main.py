import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Settings, get_settings
from .database import LedgerStore
from .errors import LedgerError
from .pricing import PriceUpdater
from .reporting import ReportingEngine
from .schemas import PriceHistoryOut, StockOut, StockReport, TransactionOut, UserOut, UserReport
from .simulation import run_trading_simulation
from .trading import TradingEngine

logger = logging.getLogger(__name__)


# ---------------- Request Models ---------------- #
class RegisterStockRequest(BaseModel):
    symbol: str
    name: str
    current_price: float
    available_quantity: int


class CreateUserRequest(BaseModel):
    username: str


class LoanRequest(BaseModel):
    user_id: int
    amount: float


class TradeRequest(BaseModel):
    user_id: int
    stock_id: int
    quantity: int


# ---------------- Lifespan ---------------- #
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    store = LedgerStore(settings.DATABASE_URL).open()
    app.state.store = store
    app.state.trading = TradingEngine(store)
    app.state.reporting = ReportingEngine(store)

    updater = None
    if settings.PRICE_UPDATES_ENABLED:
        updater = PriceUpdater(store, settings.PRICE_UPDATE_INTERVAL)
        updater.start()
    app.state.price_updater = updater
    logger.info("Stock ledger started")

    yield

    if updater is not None:
        updater.stop()
    store.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)

    app = FastAPI(title="Stock Trading Simulation API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.get("/")
    def root():
        return {"status": "ok"}

    # ---------------- Stocks ---------------- #
    @app.post("/stocks/register", response_model=StockOut)
    def register_stock(payload: RegisterStockRequest, request: Request):
        trading: TradingEngine = request.app.state.trading
        return trading.register_stock(
            payload.symbol, payload.name, payload.current_price, payload.available_quantity
        ).unwrap()

    @app.get("/stocks/history/{stock_id}", response_model=List[PriceHistoryOut])
    def get_stock_history(stock_id: int, request: Request, limit: int = Query(100)):
        return request.app.state.reporting.get_stock_history(stock_id, limit)

    @app.get("/stocks/report", response_model=List[StockReport])
    def get_stock_report(request: Request, limit: int = Query(10)):
        return request.app.state.reporting.get_stock_report(limit)

    @app.get("/stocks/top", response_model=List[StockReport])
    def get_top_stocks(request: Request, limit: int = Query(5)):
        return request.app.state.reporting.get_top_stocks(limit)

    # ---------------- Users ---------------- #
    @app.post("/users/create", response_model=UserOut)
    def create_user(payload: CreateUserRequest, request: Request):
        return request.app.state.trading.create_user(payload.username).unwrap()

    @app.post("/users/loan", response_model=UserOut)
    def take_loan(payload: LoanRequest, request: Request):
        return request.app.state.trading.issue_loan(payload.user_id, payload.amount).unwrap()

    @app.post("/users/buy", response_model=TransactionOut)
    def buy_stock(payload: TradeRequest, request: Request):
        return request.app.state.trading.execute_buy(payload.user_id, payload.stock_id, payload.quantity).unwrap()

    @app.post("/users/sell", response_model=TransactionOut)
    def sell_stock(payload: TradeRequest, request: Request):
        return request.app.state.trading.execute_sell(payload.user_id, payload.stock_id, payload.quantity).unwrap()

    @app.get("/users/report/{user_id}", response_model=UserReport)
    def get_user_report(user_id: int, request: Request):
        return request.app.state.reporting.get_user_report(user_id)

    @app.get("/users/top", response_model=List[UserReport])
    def get_top_users(request: Request, limit: int = Query(5)):
        return request.app.state.reporting.get_top_users(limit)

    # ---------------- Simulation ---------------- #
    @app.get("/simulate/trading")
    def simulate_trading(
        request: Request,
        background_tasks: BackgroundTasks,
        num_users: int = Query(5, ge=1),
        num_trades: int = Query(10, ge=1),
    ):
        background_tasks.add_task(
            run_trading_simulation,
            request.app.state.store,
            request.app.state.trading,
            num_users,
            num_trades,
        )
        return {"message": f"Simulation started with {num_users} users making {num_trades} trades each"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
