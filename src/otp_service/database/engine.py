"""Database engine, async session factory and the unit-of-work scope."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from otp_service.config import settings
from otp_service.errors import OtpServiceError, TransientError
from otp_service.models import idempotency, otp, rate_limit  # noqa: F401
from otp_service.models.base import Base

logger = logging.getLogger(__name__)


def build_engine(
    database_url: str,
    *,
    echo: bool = False,
    lock_timeout_seconds: float = settings.lock_timeout_seconds,
) -> AsyncEngine:
    """Create an async engine whose transactions take write locks up front.

    PostgreSQL gets a per-connection ``lock_timeout`` so ``FOR UPDATE`` waits
    are bounded.  SQLite has no row locks: every transaction is opened with
    ``BEGIN IMMEDIATE`` so units of work serialize on the database write lock,
    bounded by the driver's busy timeout.
    """
    url = make_url(database_url)
    connect_args: dict = {}
    if url.get_backend_name() == "sqlite":
        connect_args["timeout"] = lock_timeout_seconds
    elif url.get_driver_name() == "asyncpg":
        connect_args["server_settings"] = {
            "lock_timeout": str(int(lock_timeout_seconds * 1000))
        }

    engine = create_async_engine(database_url, echo=echo, connect_args=connect_args)
    if url.get_backend_name() == "sqlite":
        _begin_immediate(engine)
    return engine


def _begin_immediate(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record) -> None:
        # Stop the driver from emitting its own deferred BEGIN.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.debug)

async_session_factory = build_session_factory(engine)


async def init_db(bind: AsyncEngine = engine) -> None:
    """Create all tables that don't yet exist."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Yield a session inside one transaction.

    The transaction commits when the block exits normally and rolls back on
    any exception, including task cancellation.  Database failures and any
    other unexpected error are re-raised as :class:`TransientError`; the
    core's own errors pass through unchanged.
    """
    try:
        async with session_factory() as session, session.begin():
            yield session
    except SQLAlchemyError as exc:
        logger.warning("Unit of work rolled back: %s", exc.__class__.__name__)
        raise TransientError(str(exc)) from exc
    except OtpServiceError:
        raise
    except Exception as exc:
        logger.warning("Unit of work aborted: %r", exc)
        raise TransientError(str(exc)) from exc
