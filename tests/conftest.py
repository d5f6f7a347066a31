from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Optional, Set

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from supply_service.api import create_app, get_store
from supply_service.backends import InMemoryBackend, Versioned
from supply_service.config import Settings
from supply_service.database import StoreError
from supply_service.store import CollectionStore


@dataclass
class FailingBackend(InMemoryBackend):
    """In-memory backend that raises for the keys listed in ``failing_keys``."""

    failing_keys: Set[str] = field(default_factory=set)
    fail_writes_only: bool = False

    async def read(self, key: str) -> Versioned:
        if key in self.failing_keys and not self.fail_writes_only:
            raise StoreError(key, "backend unavailable")
        return await super().read(key)

    async def write(
        self, key: str, value: Any, *, expected_version: Optional[int] = None
    ) -> bool:
        if key in self.failing_keys:
            raise StoreError(key, "backend unavailable")
        return await super().write(key, value, expected_version=expected_version)


@pytest.fixture()
def backend() -> FailingBackend:
    return FailingBackend()


@pytest.fixture()
def store(backend: FailingBackend) -> CollectionStore:
    return CollectionStore(backend, max_retries=3)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        environment="test",
        kv_url="memory://",
        access_control_allow_origin="*",
        app_name="Test Supply Service",
        backup_retention=2,
    )


@pytest.fixture()
def app(settings: Settings, store: CollectionStore) -> FastAPI:
    app = create_app(settings)
    app.dependency_overrides[get_store] = lambda: store
    return app


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
