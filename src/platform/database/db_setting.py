"""
SQLAlchemy async engine and session management

This module provides:
1. Base: declarative base shared by every service's ORM models
2. UtcDateTime: timezone-aware datetime column (SQLite returns naive values)
3. Database: engine + session maker owned by the DI container

SQLite (used by tests and single-node dev) gets `BEGIN IMMEDIATE` transactions so
read-then-write sequences (ledger reservation, optimistic updates) are serialized
the same way PostgreSQL row locks serialize them.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import importlib
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import DateTime, event
from sqlalchemy.engine.interfaces import Dialect
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from src.platform.config.core_setting import settings
from src.platform.logging.loguru_io import Logger


# Modules that declare ORM models; imported before create_all so metadata is complete
MODEL_MODULES = (
    'src.platform.outbox.outbox_model',
    'src.platform.idempotency.idempotency_model',
    'src.service.reservation.driven_adapter.model.reservation_model',
    'src.service.payment.driven_adapter.model.payment_model',
    'src.service.notification.driven_adapter.model.notification_model',
)


class Base(DeclarativeBase):
    pass


class UtcDateTime(TypeDecorator[datetime]):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError('naive datetime is not allowed')
        return value.astimezone(timezone.utc)

    def process_result_value(
        self, value: Optional[datetime], dialect: Dialect
    ) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    # pysqlite's own transaction handling is disabled so we can emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, 'connect')
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, 'begin')
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql('BEGIN IMMEDIATE')


class Database:
    """
    Owns one async engine and its session maker.

    Usage:
        async with database.session() as session:
            ...
        async with database.transaction() as session:
            ...  # committed on exit, rolled back on exception
    """

    def __init__(self, *, db_url: Optional[str] = None) -> None:
        self.db_url = db_url or settings.DATABASE_URL_ASYNC
        self._engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_sqlite(self) -> bool:
        return self.db_url.startswith('sqlite')

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._session_maker

    def _create_engine(self) -> AsyncEngine:
        if self.is_sqlite:
            engine = create_async_engine(
                self.db_url,
                echo=settings.DB_ECHO,
                connect_args={'timeout': 30},
            )
            _enable_sqlite_immediate_transactions(engine)
            return engine

        return create_async_engine(
            self.db_url,
            echo=settings.DB_ECHO,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_POOL_MAX_OVERFLOW,
            pool_pre_ping=True,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_maker() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_maker.begin() as session:
            yield session

    async def create_tables(self) -> None:
        """Create database tables if they don't exist"""
        for module in MODEL_MODULES:
            importlib.import_module(module)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, checkfirst=True)
        Logger.base.info(f'🗄️ [DB] Tables ready ({len(Base.metadata.tables)} tables)')

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None
