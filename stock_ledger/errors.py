"""Ledger error taxonomy and the result type returned by state transitions.

Trading transitions never raise for business-rule failures. They hand back a
``Result`` carrying either the produced value or one of the ``LedgerError``
subclasses below, and ``LedgerStore.run`` rolls the unit of work back whenever
the result is a failure. ``Result.unwrap()`` re-raises the error for callers
that prefer exceptions.
"""
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class LedgerError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LedgerError):
    status_code = 404


class UserNotFound(NotFound):
    def __init__(self, user_id):
        super().__init__(f"User {user_id} not found")


class StockNotFound(NotFound):
    def __init__(self, stock_id):
        super().__init__(f"Stock {stock_id} not found")


class InvalidArgument(LedgerError):
    pass


class DuplicateKey(LedgerError):
    pass


class DuplicateUsername(DuplicateKey):
    def __init__(self, username: str):
        super().__init__(f"Username '{username}' already exists")


class DuplicateSymbol(DuplicateKey):
    def __init__(self, symbol: str):
        super().__init__(f"Stock symbol '{symbol}' already exists")


class InsufficientFunds(LedgerError):
    pass


class InsufficientSupply(LedgerError):
    pass


class InsufficientHoldings(LedgerError):
    pass


class LimitExceeded(LedgerError):
    pass


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[LedgerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: LedgerError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value
