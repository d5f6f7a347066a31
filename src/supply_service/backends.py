"""
Key-value backends holding one JSON document and a version stamp per key.

Three implementations share the :class:`KeyValueBackend` interface: an
in-memory backend for tests and local runs, a Redis backend for deployments
with a remote store, and a SQL backend for single-node deployments.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis import exceptions as redis_exceptions
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .config import Settings
from .database import StoreError, create_engine, init_database
from .models import CollectionRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Versioned:
    """A stored value together with the version it was read at."""

    value: Any = None
    version: int = 0


class KeyValueBackend(Protocol):
    """Operations the collection store needs from a backend."""

    name: str

    async def initialize(self) -> None:
        ...

    async def read(self, key: str) -> Versioned:
        ...

    async def write(
        self, key: str, value: Any, *, expected_version: Optional[int] = None
    ) -> bool:
        ...

    async def close(self) -> None:
        ...


def _encode(key: str, value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise StoreError(key, f"Value is not JSON serializable: {exc}") from exc


def _decode(key: str, payload: str | bytes) -> Any:
    try:
        return json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise StoreError(key, f"Stored value is not valid JSON: {exc}") from exc


@dataclass
class InMemoryBackend:
    """Process-local backend for development and tests."""

    name: str = "memory"
    entries: Dict[str, Tuple[str, int]] = field(default_factory=dict)

    async def initialize(self) -> None:
        return None

    async def read(self, key: str) -> Versioned:
        stored = self.entries.get(key)
        if stored is None:
            return Versioned()
        payload, version = stored
        return Versioned(_decode(key, payload), version)

    async def write(
        self, key: str, value: Any, *, expected_version: Optional[int] = None
    ) -> bool:
        current_version = self.entries.get(key, ("", 0))[1]
        if expected_version is not None and expected_version != current_version:
            return False
        # Stored as JSON text to mimic a real round trip.
        self.entries[key] = (_encode(key, value), current_version + 1)
        return True

    async def close(self) -> None:
        return None

    def reset(self) -> None:
        self.entries.clear()


@dataclass
class RedisBackend:
    """Redis backend; versions live under ``<key>:version`` and guard writes via WATCH."""

    url: str
    name: str = "redis"

    def __post_init__(self) -> None:
        self.client = redis.Redis.from_url(self.url)

    @staticmethod
    def version_key(key: str) -> str:
        return f"{key}:version"

    async def initialize(self) -> None:
        return None

    async def read(self, key: str) -> Versioned:
        try:
            payload, version = await self.client.mget(key, self.version_key(key))
        except redis_exceptions.RedisError as exc:
            raise StoreError(key, f"Redis read failed: {exc}") from exc
        if payload is None:
            return Versioned(None, int(version or 0))
        return Versioned(_decode(key, payload), int(version or 0))

    async def write(
        self, key: str, value: Any, *, expected_version: Optional[int] = None
    ) -> bool:
        payload = _encode(key, value)
        version_key = self.version_key(key)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                if expected_version is not None:
                    await pipe.watch(version_key)
                    current = await pipe.get(version_key)
                    if int(current or 0) != expected_version:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                pipe.set(key, payload)
                pipe.incr(version_key)
                await pipe.execute()
        except redis_exceptions.WatchError:
            return False
        except redis_exceptions.RedisError as exc:
            raise StoreError(key, f"Redis write failed: {exc}") from exc
        return True

    async def close(self) -> None:
        await self.client.aclose()


class SqlBackend:
    """SQLAlchemy backend storing each key as a row of ``kv_collections``."""

    name = "sql"

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        self.engine = create_engine(database_url, echo=echo)
        self.sessions = async_sessionmaker(bind=self.engine, expire_on_commit=False)

    async def initialize(self) -> None:
        try:
            await init_database(self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(CollectionRow.__tablename__, f"Schema setup failed: {exc}") from exc

    async def read(self, key: str) -> Versioned:
        try:
            async with self.sessions() as session:
                row = await session.get(CollectionRow, key)
        except SQLAlchemyError as exc:
            raise StoreError(key, f"SQL read failed: {exc}") from exc
        if row is None:
            return Versioned()
        return Versioned(_decode(key, row.value), row.version)

    async def write(
        self, key: str, value: Any, *, expected_version: Optional[int] = None
    ) -> bool:
        payload = _encode(key, value)
        try:
            async with self.sessions() as session:
                if expected_version is None:
                    row = await session.get(CollectionRow, key)
                    if row is None:
                        session.add(CollectionRow(key=key, value=payload, version=1))
                    else:
                        row.value = payload
                        row.version = row.version + 1
                elif expected_version == 0:
                    session.add(CollectionRow(key=key, value=payload, version=1))
                else:
                    stmt = (
                        update(CollectionRow)
                        .where(
                            CollectionRow.key == key,
                            CollectionRow.version == expected_version,
                        )
                        .values(value=payload, version=CollectionRow.version + 1)
                    )
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        await session.rollback()
                        return False
                await session.commit()
        except IntegrityError as exc:
            # A concurrent writer created the row first.
            if expected_version is not None:
                return False
            raise StoreError(key, f"SQL write failed: {exc}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(key, f"SQL write failed: {exc}") from exc
        return True

    async def close(self) -> None:
        await self.engine.dispose()


def create_backend(settings: Settings) -> KeyValueBackend:
    """Build the backend named by ``settings.kv_url``."""

    backend_name = settings.kv_backend
    if backend_name == "memory":
        backend: KeyValueBackend = InMemoryBackend()
    elif backend_name == "redis":
        backend = RedisBackend(url=settings.kv_url)
    else:
        backend = SqlBackend(settings.kv_url, echo=settings.echo_sql)
    logger.info("Using %s key-value backend", backend.name)
    return backend


__all__ = [
    "InMemoryBackend",
    "KeyValueBackend",
    "RedisBackend",
    "SqlBackend",
    "Versioned",
    "create_backend",
]
