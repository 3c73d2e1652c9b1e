"""
SLA Store Connection
====================

Engine and session lifecycle for the SLA store (trackings, rules,
schedules, holiday calendars, escalation ledger).

One ``AsyncSession`` backs one persistence unit: an API request, a single
ticket inside the monitoring sweep, or a catalog sync.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.config import settings


class Base(DeclarativeBase):
    """Declarative base for the SLA store tables."""
    pass


_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("SLA store not initialized; call init_database() at startup")
    return _engine


def init_database() -> AsyncEngine:
    """Build the engine and session factory from ``settings``."""
    global _engine, _session_maker

    # asyncpg takes ssl=, not libpq's sslmode=
    database_url = settings.database_url.replace("sslmode=", "ssl=")

    _engine = create_async_engine(
        database_url,
        echo=settings.debug,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )
    # trackings are read after commit by the sweep and the API responses
    _session_maker = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _engine


async def close_database() -> None:
    global _engine, _session_maker

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one SLA unit per request."""
    async with get_session_context() as session:
        yield session


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    One SLA persistence unit.

    Commits when the block exits cleanly and rolls back otherwise, so a
    failed ticket in the sweep leaves no partial ledger rows behind.
    """
    if _session_maker is None:
        raise RuntimeError("SLA store not initialized; call init_database() at startup")

    async with _session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables() -> None:
    """Create the SLA store tables; migrations own the schema in production."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
