"""Ledger store: engine lifecycle, units of work and row-level helpers.

The store is constructed explicitly and handed to the engines that need it.
Every trading transition runs through ``LedgerStore.run`` so that the reads,
precondition checks and writes of one operation share one database
transaction. Rows that are about to be modified are read with
``for_update=True``; on MySQL that becomes ``SELECT ... FOR UPDATE``, while on
SQLite (which has no row locks) write transactions are opened with
``BEGIN IMMEDIATE`` so writers are serialized for the whole unit. Read
sessions open a plain deferred transaction and do not wait for writers.
"""
import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, event, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .errors import DuplicateKey, Result
from .models import Base, Holding, Stock, User

logger = logging.getLogger(__name__)

# Execution option marking a connection that will write
WRITE_OPTIONS = {"ledger_write": True}

MYSQL_DUPLICATE_ENTRY = 1062


def _serialize_sqlite_writes(engine: Engine):
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite's implicit one
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get("ledger_write"):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def is_unique_violation(error: IntegrityError) -> bool:
    orig = error.orig
    if getattr(orig, "errno", None) == MYSQL_DUPLICATE_ENTRY:
        return True
    message = str(orig)
    return "UNIQUE constraint failed" in message or "Duplicate entry" in message


class LedgerStore:
    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    # ---------------- Lifecycle ---------------- #
    def open(self) -> "LedgerStore":
        if self.engine is not None:
            return self

        connect_args = {}
        if self.database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine = create_engine(self.database_url, echo=self.echo, connect_args=connect_args)
        if self.engine.dialect.name == "sqlite":
            _serialize_sqlite_writes(self.engine)

        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        logger.info(f"Ledger store opened ({self.engine.dialect.name})")
        return self

    def close(self):
        if self.engine is None:
            return
        self.engine.dispose()
        self.engine = None
        self._session_factory = None
        logger.info("Ledger store closed")

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def __enter__(self) -> "LedgerStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Ledger store is not open")
        return self._session_factory

    # ---------------- Units of Work ---------------- #
    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session for best-effort reads; nothing is committed."""
        with self._factory()() as session:
            yield session

    @contextmanager
    def atomic(self) -> Iterator[Session]:
        """Session inside one transaction: commit on exit, rollback on any exception."""
        with self._factory()() as session:
            with session.begin():
                session.connection(execution_options=WRITE_OPTIONS)
                yield session

    def run(self, unit: Callable[[Session], Result]) -> Result:
        """
        Execute ``unit`` as one transaction. A failed result rolls everything back,
        as does any exception. Unique-constraint violations come back as DuplicateKey;
        other integrity errors are re-raised.
        """
        with self._factory()() as session:
            session.begin()
            session.connection(execution_options=WRITE_OPTIONS)
            try:
                result = unit(session)
                if result.ok:
                    session.commit()
                    return result
            except IntegrityError as e:
                session.rollback()
                if not is_unique_violation(e):
                    logger.warning(f"Integrity error, unit rolled back: {e.orig}")
                    raise
                logger.warning(f"Unique constraint violated: {e.orig}")
                return Result.failure(DuplicateKey(str(e.orig)))
            except Exception:
                session.rollback()
                raise
            session.rollback()
            return result


# ---------------- Row Helpers ---------------- #
def get_user(session: Session, user_id: int, for_update: bool = False) -> Optional[User]:
    stmt = select(User).where(User.id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def get_user_by_username(session: Session, username: str) -> Optional[User]:
    return session.execute(select(User).where(User.username == username)).scalar_one_or_none()


def get_stock(session: Session, stock_id: int, for_update: bool = False) -> Optional[Stock]:
    stmt = select(Stock).where(Stock.id == stock_id)
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def get_stock_by_symbol(session: Session, symbol: str) -> Optional[Stock]:
    return session.execute(select(Stock).where(Stock.symbol == symbol)).scalar_one_or_none()


def get_holding(session: Session, user_id: int, stock_id: int, for_update: bool = False) -> Optional[Holding]:
    stmt = select(Holding).where(Holding.user_id == user_id, Holding.stock_id == stock_id)
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def insert(session: Session, row) -> int:
    """Add a row and flush it so the generated primary key is available."""
    session.add(row)
    session.flush()
    return row.id


def conditional_update(session: Session, model, row_id: int, values: dict, *conditions) -> bool:
    """
    UPDATE model SET values WHERE id = row_id AND conditions; True if the row matched.
    Objects already loaded in the session are not synchronized; refresh them afterwards.
    """
    stmt = (
        update(model)
        .where(model.id == row_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return result.rowcount == 1
