from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import QueuePool, StaticPool

from processflow.config import settings
from processflow.core.metrics import (
    db_pool_checked_in,
    db_pool_checked_out,
    db_pool_overflow,
    db_pool_size,
)


def enable_sqlite_savepoints(sync_engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN on SQLite so SAVEPOINT / begin_nested() behave.

    The sqlite3 driver (and aiosqlite on top of it) emits its own implicit
    BEGIN, which breaks nested transactions.  This is the recipe from the
    SQLAlchemy SQLite dialect documentation.
    """

    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine with dialect-appropriate pool settings."""
    if url.startswith("sqlite"):
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs.setdefault("poolclass", StaticPool)
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = create_async_engine(url, echo=False, **kwargs)
        enable_sqlite_savepoints(engine.sync_engine)
        return engine

    kwargs.setdefault("pool_size", 20)
    kwargs.setdefault("max_overflow", 10)
    kwargs.setdefault("pool_timeout", 30)
    kwargs.setdefault("pool_recycle", 1800)
    kwargs.setdefault("pool_pre_ping", True)
    engine = create_async_engine(url, echo=False, future=True, **kwargs)

    pool = engine.sync_engine.pool
    if isinstance(pool, QueuePool):

        def _update_pool_metrics(*_args) -> None:
            db_pool_size.set(pool.size())
            db_pool_checked_in.set(pool.checkedin())
            db_pool_checked_out.set(pool.checkedout())
            db_pool_overflow.set(pool.overflow())

        event.listen(engine.sync_engine, "checkout", _update_pool_metrics)
        event.listen(engine.sync_engine, "checkin", _update_pool_metrics)

    return engine


engine = build_engine(settings.database_url)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    async with async_session() as session:
        yield session
