"""
Rendezvous — Async Database Engine & Session Factory

Provides two connection strategies:

1. **Cloud Run (production)** – Uses ``cloud-sql-python-connector`` with
   automatic IAM authentication over a Unix domain socket.  Activated when
   ``CLOUD_SQL_USE_UNIX_SOCKET`` is *True* **and** a valid
   ``CLOUD_SQL_INSTANCE_CONNECTION`` is provided.

2. **Plain URL** – A standard ``asyncpg`` connection string read from
   ``DATABASE_URL``.  ``sqlite+aiosqlite`` URLs are accepted as well so the
   test suite can run against an in-memory store.

Both paths expose the same ``get_db`` async generator for FastAPI dependency
injection.  The store is the single shared mutable resource; services rely on
its conditional updates and unique indexes for cross-session invariants.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from app.config import get_settings

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# Declarative base for all ORM models
# ------------------------------------------------------------------ #

class Base(DeclarativeBase):
    """Shared declarative base.

    Every SQLAlchemy model in the project should inherit from this class::

        from app.database import Base

        class User(Base):
            __tablename__ = "users"
            ...
    """
    pass


# ------------------------------------------------------------------ #
# Pool configuration (server databases only)
# ------------------------------------------------------------------ #

_POOL_KWARGS = {
    "pool_size": 10,
    "max_overflow": 5,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


# ------------------------------------------------------------------ #
# Engine construction helpers
# ------------------------------------------------------------------ #

def _build_cloud_sql_engine() -> AsyncEngine:
    """Create an async engine that connects through the Cloud SQL Python
    Connector with automatic IAM authentication."""
    from google.cloud.sql.connector import Connector

    settings = get_settings()

    connector = Connector()

    async def _get_connection():
        return await connector.connect_async(
            settings.CLOUD_SQL_INSTANCE_CONNECTION,
            "asyncpg",
            user=settings.DB_USER,
            password=settings.DB_PASSWORD,
            db=settings.DB_NAME,
            enable_iam_auth=True,
        )

    engine = create_async_engine(
        "postgresql+asyncpg://",
        async_creator=_get_connection,
        echo=(settings.LOG_LEVEL == "DEBUG"),
        **_POOL_KWARGS,
    )

    logger.info(
        "Database engine created via Cloud SQL Connector (%s)",
        settings.CLOUD_SQL_INSTANCE_CONNECTION,
    )
    return engine


def build_url_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine from a database URL.

    A plain ``postgresql://`` scheme is upgraded to the asyncpg dialect.
    SQLite URLs get a single shared connection so an in-memory database
    survives across sessions.
    """
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_async_engine(url, echo=echo, **_POOL_KWARGS)


def _create_engine() -> AsyncEngine:
    """Select the appropriate engine builder based on configuration."""
    settings = get_settings()

    use_cloud_sql = (
        settings.CLOUD_SQL_USE_UNIX_SOCKET
        and settings.CLOUD_SQL_INSTANCE_CONNECTION
    )

    if use_cloud_sql:
        return _build_cloud_sql_engine()

    engine = build_url_engine(
        settings.DATABASE_URL, echo=(settings.LOG_LEVEL == "DEBUG")
    )
    logger.info("Database engine created from DATABASE_URL (%s)", engine.dialect.name)
    return engine


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


async def create_all(bind: AsyncEngine) -> None:
    """Create every table known to ``Base.metadata`` (dev and test stores)."""
    import app.models  # noqa: F401  (registers mappers)

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ------------------------------------------------------------------ #
# Module-level engine & session factory
# ------------------------------------------------------------------ #

engine = _create_engine()

async_session_factory: async_sessionmaker[AsyncSession] = make_session_factory(engine)


# ------------------------------------------------------------------ #
# FastAPI dependency
# ------------------------------------------------------------------ #

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` and ensure it is closed afterwards.

    Usage in a FastAPI route::

        from fastapi import Depends
        from app.database import get_db

        @router.get("/items")
        async def list_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
