"""Database initialization helpers."""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""


class StoreError(Exception):
    """Raised when a key-value backend cannot serve a read or write."""

    def __init__(self, key: str, message: str) -> None:
        super().__init__(f"{message} ({key})")
        self.key = key


def create_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create a configured SQLAlchemy async engine."""

    return create_async_engine(database_url, echo=echo)


async def init_database(engine: AsyncEngine) -> None:
    """Create the tables backing the SQL key-value backend."""

    # Imported for its side effect of registering the table on ``Base``.
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = [
    "Base",
    "StoreError",
    "create_engine",
    "init_database",
]
