"""Async SQLAlchemy engine, session factory and tenant context helpers.

Supports both PostgreSQL (production) and SQLite (local dev mode).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` -> connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   -> single-connection SQLite engine

Tenant context is always explicit: every unit of tenant work opens its own
session through :func:`run_with_tenant_context` (or the API's tenant
session dependency).  Nothing here keeps a process-wide "current tenant".
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Alphanumeric, hyphens, underscores, 1-128 chars.
TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")

T = TypeVar("T")


def validate_tenant_id(tenant_id: str) -> str:
    """Return *tenant_id* unchanged or raise ``ValueError``."""
    if not TENANT_ID_RE.match(tenant_id or ""):
        raise ValueError(f"Invalid tenant_id: must match {TENANT_ID_RE.pattern!r}, got {tenant_id!r}")
    return tenant_id


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Number of persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Maximum overflow connections for PostgreSQL (ignored for SQLite).
    """
    if database_url.startswith("sqlite"):
        from billing_core.state.sqlite_adapter import get_local_engine

        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ":memory:"
        return get_local_engine(db_path if db_path else ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args={
            "server_settings": {
                "statement_timeout": "30000",
                "lock_timeout": "10000",
            }
        },
    )
    logger.info("Created async engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def _is_sqlite(session: AsyncSession) -> bool:
    bind = session.get_bind()
    dialect = getattr(bind, "dialect", None)
    name = getattr(dialect, "name", "") if dialect is not None else str(getattr(bind, "url", ""))
    return "sqlite" in str(name)


async def set_tenant_context(session: AsyncSession, tenant_id: str) -> None:
    """Bind *tenant_id* to the current transaction for RLS enforcement.

    On PostgreSQL this runs ``set_config('app.tenant_id', ..., true)`` which
    is scoped to the transaction (``SET LOCAL`` semantics).  SQLite has no
    RLS, so only the identifier validation applies.

    Raises
    ------
    ValueError
        If *tenant_id* does not match the allowed pattern.
    """
    validate_tenant_id(tenant_id)
    if _is_sqlite(session):
        return

    # Bound parameter: the value is never interpolated into the SQL string.
    await session.execute(
        text("SELECT set_config('app.tenant_id', :tid, true)"),
        {"tid": tenant_id},
    )


@asynccontextmanager
async def tenant_session(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: str,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session bound to *tenant_id*; commit on success, roll back on error."""
    async with session_factory() as session:
        try:
            await set_tenant_context(session, tenant_id)
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def run_with_tenant_context(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: str,
    fn: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    """Run ``fn(session)`` in a fresh transaction scoped to *tenant_id*.

    The transaction commits when *fn* returns and rolls back when it
    raises.  Each call gets its own session, so callers may run several
    tenants concurrently.
    """
    async with tenant_session(session_factory, tenant_id) as session:
        return await fn(session)


@asynccontextmanager
async def get_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an unscoped session with commit/rollback semantics.

    Only for cross-tenant scans and lookups that resolve the tenant
    (renewal candidate discovery, webhook reference lookup).
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
