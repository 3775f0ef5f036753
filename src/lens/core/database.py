"""Async database engine and session management."""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

engine: AsyncEngine | None = None
async_session_factory = None


class Base(DeclarativeBase):
    pass


def use_transactional_ddl(sqlite_engine: AsyncEngine) -> AsyncEngine:
    """Make SQLite DDL part of the surrounding transaction.

    The sqlite3 driver commits before CREATE/ALTER on its own. Switch that
    off and let SQLAlchemy emit BEGIN, so a failed run rolls back table
    changes along with the rows.
    """

    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    return sqlite_engine


def init_engine(database_url: str) -> AsyncEngine:
    global engine, async_session_factory
    connect_args = {}
    if "sqlite" in database_url:
        connect_args["check_same_thread"] = False
    engine = create_async_engine(database_url, echo=False, connect_args=connect_args)
    if "sqlite" in database_url:
        use_transactional_ddl(engine)
    async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine


async def create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    global engine, async_session_factory
    if engine is not None:
        await engine.dispose()
    engine = None
    async_session_factory = None
