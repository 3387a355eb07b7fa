"""
Database engine, session factory, declarative base and the request session.

  - engine: async engine built from DATABASE_URL
  - AsyncSessionLocal: session factory shared by requests, webhook
    background tasks and the settlement reconciler
  - Base: declarative base for the ORM models in app/models
  - get_db(): FastAPI dependency yielding one session per request

Two kinds of session:
  Requests use get_db(), which commits when the route returns and rolls
  back if it raises.

  Settlement never borrows the request session. SettlementReconciler holds
  AsyncSessionLocal and opens one short transaction per attempt, so a
  credit started from a status check or a webhook background task commits
  or rolls back on its own, whatever happens to the request afterwards.

SQLite:
  Development and tests run on aiosqlite. Concurrent settlements then
  serialize on SQLite's write lock, so the driver is given a busy timeout:
  a writer waits for the lock instead of failing immediately with
  "database is locked". PostgreSQL (postgresql+asyncpg://) needs no extra
  arguments.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

# Seconds a SQLite writer waits for the database lock
SQLITE_BUSY_TIMEOUT = 15


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"timeout": SQLITE_BUSY_TIMEOUT}
    return {}


# echo=True under DEBUG prints every SQL statement
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    connect_args=_connect_args(settings.DATABASE_URL),
)

# expire_on_commit=False: attributes stay readable after commit without an
# implicit (and, under asyncio, impossible) lazy reload
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base; importing app.models registers every table on Base.metadata."""


async def get_db():
    """
    Yield a session for the duration of one request.

    Commits after the route returns; rolls back and re-raises if it fails.
    Services that must make a row visible to other sessions before
    returning (new invoices, withdrawal debits) commit explicitly.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
