from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine


def _normalize_db_url(url: str | None) -> str | None:
    # hosted postgres often hands out "postgres://..." , sqlalchemy async needs "postgresql+asyncpg://..."
    if not url:
        return None
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def use_immediate_transactions(engine: AsyncEngine) -> None:
    """
    SQLite has no row locks , so take the write lock when a transaction begins.
    Concurrent checkouts then queue up behind each other the way `FOR UPDATE` makes them wait on postgres,
    instead of failing with "database is locked" when upgrading a read lock.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
