import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import (JSON, Boolean, Column, Date, DateTime, Float,
                        ForeignKey, Index, Integer, MetaData, String, Table,
                        create_engine, delete, func, select, text)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from vtm_option.utils.time_utils import utcnow

logger = logging.getLogger("database")

metadata = MetaData()

users = Table(
    'users', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('email', String(255), unique=True),
    Column('created_at', DateTime, default=utcnow),
)

# One row per user: risk thresholds plus the daily accumulators
user_settings = Table(
    'settings', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), unique=True, nullable=False),
    Column('stake', Float, nullable=False, default=1.0),
    Column('target', Float, nullable=False),
    Column('stop_limit', Float, nullable=False),
    Column('is_bot_active', Boolean, nullable=False, default=False),
    Column('daily_profit', Float, nullable=False, default=0.0),
    Column('daily_loss', Float, nullable=False, default=0.0),
    Column('reset_date', Date, nullable=False),
    Column('updated_at', DateTime, default=utcnow, onupdate=utcnow),
)

signals = Table(
    'signals', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('payload', JSON, nullable=False),
    Column('created_at', DateTime, nullable=False, default=utcnow),
    Column('processed_at', DateTime, nullable=True),
    Index('ix_signals_queue', 'processed_at', 'created_at'),
)

trades = Table(
    'trades', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('signal_id', Integer, ForeignKey('signals.id', ondelete='SET NULL'), nullable=True),
    Column('contract_id', String(64), nullable=True),
    Column('asset', String(32), nullable=False),
    Column('stake', Float, nullable=False),
    Column('direction', String(8), nullable=False),
    Column('status', String(16), nullable=False),
    Column('opened_at', DateTime, nullable=False),
    Column('closed_at', DateTime, nullable=True),
    Column('pnl', Float, nullable=True),
    Index('ix_trades_user_status', 'user_id', 'status'),
)

trading_sessions = Table(
    'trading_sessions', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('started_at', DateTime, nullable=False),
    Column('last_heartbeat', DateTime, nullable=False),
    Column('status', String(16), nullable=False),
    Column('closed_at', DateTime, nullable=True),
    Index('ix_sessions_user_status', 'user_id', 'status'),
)


class DatabaseUnavailable(RuntimeError):
    """Repository cannot be reached; nothing the core does is meaningful without it."""


def _select(table: Table, criteria, order_by=None, limit: Optional[int] = None):
    query = select(table)
    if criteria:
        query = query.where(*criteria)
    if order_by is not None:
        if isinstance(order_by, (list, tuple)):
            query = query.order_by(*order_by)
        else:
            query = query.order_by(order_by)
    if limit is not None:
        query = query.limit(limit)
    return query


class UnitOfWork:
    """Statements bound to one connection. Inside Database.transaction() they commit or roll back together."""

    def __init__(self, conn):
        self.conn = conn

    def fetch_all(self, table: Table, *criteria, order_by=None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        rows = self.conn.execute(_select(table, criteria, order_by, limit)).fetchall()
        return [dict(r._mapping) for r in rows]

    def fetch_one(self, table: Table, *criteria, order_by=None) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(_select(table, criteria, order_by, 1)).fetchone()
        return dict(row._mapping) if row is not None else None

    def insert(self, table: Table, **values) -> int:
        result = self.conn.execute(table.insert().values(**values))
        return result.inserted_primary_key[0]

    def update(self, table: Table, values: Dict[str, Any], *criteria) -> int:
        result = self.conn.execute(table.update().where(*criteria).values(**values))
        return result.rowcount

    def delete(self, table: Table, *criteria) -> int:
        result = self.conn.execute(delete(table).where(*criteria))
        return result.rowcount

    def count(self, table: Table, *criteria) -> int:
        query = select(func.count()).select_from(table)
        if criteria:
            query = query.where(*criteria)
        return int(self.conn.execute(query).scalar() or 0)


class Database:
    def __init__(self, url: str, **engine_kwargs):
        self.url = url
        self._connected = False
        if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:")):
            # A private in-memory database exists per connection unless the pool shares one
            engine_kwargs.setdefault("poolclass", StaticPool)
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        self.engine = create_engine(url, **engine_kwargs)

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        """Create missing tables and verify connectivity.

        Raises DatabaseUnavailable instead of degrading to a silent no-op mode.
        """
        try:
            metadata.create_all(self.engine)
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Database connection failed: {e}")
            raise DatabaseUnavailable(f"Database connection failed: {e}") from e
        self._connected = True
        logger.info("Database connected successfully")

    async def disconnect(self):
        self._connected = False
        self.engine.dispose()
        logger.info("Database disconnected")

    async def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database ping failed: {e}")
            return False

    def _require_connection(self):
        if not self._connected:
            raise RuntimeError("Database not connected")

    async def fetch_all(self, table: Table, *criteria, order_by=None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        self._require_connection()
        with self.engine.connect() as conn:
            return UnitOfWork(conn).fetch_all(table, *criteria, order_by=order_by, limit=limit)

    async def fetch_one(self, table: Table, *criteria, order_by=None) -> Optional[Dict[str, Any]]:
        self._require_connection()
        with self.engine.connect() as conn:
            return UnitOfWork(conn).fetch_one(table, *criteria, order_by=order_by)

    async def count(self, table: Table, *criteria) -> int:
        self._require_connection()
        with self.engine.connect() as conn:
            return UnitOfWork(conn).count(table, *criteria)

    async def insert(self, table: Table, **values) -> int:
        async with self.transaction() as uow:
            return uow.insert(table, **values)

    async def update(self, table: Table, values: Dict[str, Any], *criteria) -> int:
        async with self.transaction() as uow:
            return uow.update(table, values, *criteria)

    async def delete(self, table: Table, *criteria) -> int:
        async with self.transaction() as uow:
            return uow.delete(table, *criteria)

    @asynccontextmanager
    async def transaction(self):
        """Yield a UnitOfWork; commit on normal exit, roll back on any exception."""
        self._require_connection()
        with self.engine.begin() as conn:
            yield UnitOfWork(conn)
