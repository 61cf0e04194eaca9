"""
database.py — declarative base, engine factory and the per-request session.

Engines are built here and nowhere else; domain code reaches the database
through KeyedStore (store.py), which borrows sessions from the factory.

The engine is NOT created at import time. main.py's lifespan calls
create_engine_and_sessionmaker() once at startup, keeps both on app.state,
and disposes the engine at shutdown. Tests build their own against SQLite.
"""
from collections.abc import AsyncGenerator
from typing import Tuple

from fastapi import Request
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


# ---------------------------------------------------------------------------
# Declarative base: ALL ORM models inherit from this
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared by user_sessions and training_runs. Lives outside models/ so alembic/env.py can import it first."""


# JSONB on PostgreSQL, plain JSON on SQLite (test database)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Engine + session factory: one pair per application lifetime
# ---------------------------------------------------------------------------
def create_engine_and_sessionmaker(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Build the async engine and its session factory.

    Tests pass pool_size=1, max_overflow=0 so SQLite sees one writer at a time.
    """
    engine = create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=pool_size,          # Core connection pool size
        max_overflow=max_overflow,    # Extra connections under peak load
    )
    sessionmaker = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,   # rows are read after the session closes
    )
    return engine, sessionmaker


# ---------------------------------------------------------------------------
# FastAPI dependency: yields session, commits or rolls back
# ---------------------------------------------------------------------------
async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    One AsyncSession per request, committed when the handler returns and
    rolled back if it raises.
    Used by the health check; domain components go through KeyedStore instead.
    """
    sessionmaker: async_sessionmaker[AsyncSession] = request.app.state.sessionmaker
    async with sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
