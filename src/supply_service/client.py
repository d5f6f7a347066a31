"""
Client-side data access: an HTTP client for the API and a data manager that
falls back to a local JSON file when the API cannot be reached.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .store import new_record_id, utc_timestamp

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Raised when the API answers with a non-2xx status or a non-JSON body."""

    def __init__(self, status_code: int, payload: Any = None) -> None:
        super().__init__(f"HTTP错误: {status_code}")
        self.status_code = status_code
        self.payload = payload


class ApiClient:
    """Thin async wrapper around the item and migration endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        api_prefix: str = "/api",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_prefix = api_prefix.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        payload: Any = None,
    ) -> Any:
        response = await self._client.request(
            method,
            f"{self.api_prefix}{path}",
            params=params,
            json=payload,
        )
        try:
            body = response.json()
        except ValueError:
            # Non-JSON bodies count as failures even on 2xx.
            raise ApiError(response.status_code, None) from None
        if response.is_error:
            raise ApiError(response.status_code, body)
        return body

    async def get_items(self) -> List[Any]:
        response = await self.request("GET", "/items", params={"action": "list"})
        return response["data"] if response.get("success") else []

    async def get_stats(self) -> Dict[str, Any]:
        response = await self.request("GET", "/items", params={"action": "stats"})
        return response["data"] if response.get("success") else {}

    async def add_item(self, item_data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", "/items", payload=dict(item_data))

    async def update_item(self, item_id: str, updates: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.request("PUT", "/items", params={"id": item_id}, payload=dict(updates))

    async def delete_item(self, item_id: str) -> Dict[str, Any]:
        return await self.request("DELETE", "/items", params={"id": item_id})

    async def migrate_data(self, backup_data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", "/migrate", payload=dict(backup_data))

    async def check_connection(self) -> bool:
        try:
            await self.request("GET", "/items", params={"action": "list"})
        except (httpx.HTTPError, ApiError):
            logger.warning("API连接失败，将使用本地存储模式")
            return False
        return True


@dataclass
class LocalItemStore:
    """Items persisted to a JSON file, used while the API is unreachable."""

    storage_path: Path
    _lock: RLock = field(default_factory=RLock, init=False)

    def __post_init__(self) -> None:
        self.storage_path = Path(self.storage_path)

    def list_items(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self._load_unlocked()

    def add_item(self, item_data: Mapping[str, Any]) -> Dict[str, Any]:
        timestamp = utc_timestamp()
        item = dict(item_data)
        item.update({"id": new_record_id(), "createdAt": timestamp, "updatedAt": timestamp})
        with self._lock:
            items = self._load_unlocked()
            items.append(item)
            self._write_unlocked(items)
        return {"success": True, "data": item}

    def update_item(self, item_id: str, updates: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock:
            items = self._load_unlocked()
            for index, item in enumerate(items):
                if item.get("id") == item_id:
                    merged = dict(item)
                    merged.update(updates)
                    merged["updatedAt"] = utc_timestamp()
                    items[index] = merged
                    self._write_unlocked(items)
                    return {"success": True}
        return {"success": False, "error": "物资不存在"}

    def delete_item(self, item_id: str) -> Dict[str, Any]:
        with self._lock:
            items = self._load_unlocked()
            self._write_unlocked([item for item in items if item.get("id") != item_id])
        return {"success": True}

    def _load_unlocked(self) -> List[Dict[str, Any]]:
        if not self.storage_path.exists():
            return []
        raw = self.storage_path.read_text(encoding="utf-8") or "[]"
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("本地存储读取失败: %s", self.storage_path)
            return []
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def _write_unlocked(self, items: List[Dict[str, Any]]) -> None:
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.storage_path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(items, indent=2, ensure_ascii=False), encoding="utf-8")
        temp_path.replace(self.storage_path)


class DataManager:
    """Routes item operations to the API while online, else to local storage.

    The online flag belongs to this object. It is set by :meth:`connect`,
    dropped on the first failed remote call, and only raised again by an
    explicit :meth:`reconnect`.
    """

    def __init__(self, api: ApiClient, local: LocalItemStore) -> None:
        self.api = api
        self.local = local
        self.online = False

    async def connect(self) -> bool:
        self.online = await self.api.check_connection()
        logger.info("数据管理器模式: %s", "在线模式" if self.online else "离线模式")
        return self.online

    async def reconnect(self) -> bool:
        return await self.connect()

    def _go_offline(self, operation: str, exc: Exception) -> None:
        logger.warning("API%s失败，切换到本地存储: %s", operation, exc)
        self.online = False

    async def get_items(self) -> List[Any]:
        if self.online:
            try:
                return await self.api.get_items()
            except (httpx.HTTPError, ApiError) as exc:
                self._go_offline("获取物资", exc)
        return self.local.list_items()

    async def add_item(self, item_data: Mapping[str, Any]) -> Dict[str, Any]:
        if self.online:
            try:
                return await self.api.add_item(item_data)
            except (httpx.HTTPError, ApiError) as exc:
                self._go_offline("添加物资", exc)
        return self.local.add_item(item_data)

    async def update_item(self, item_id: str, updates: Mapping[str, Any]) -> Dict[str, Any]:
        if self.online:
            try:
                return await self.api.update_item(item_id, updates)
            except (httpx.HTTPError, ApiError) as exc:
                self._go_offline("更新物资", exc)
        return self.local.update_item(item_id, updates)

    async def delete_item(self, item_id: str) -> Dict[str, Any]:
        if self.online:
            try:
                return await self.api.delete_item(item_id)
            except (httpx.HTTPError, ApiError) as exc:
                self._go_offline("删除物资", exc)
        return self.local.delete_item(item_id)


__all__ = ["ApiClient", "ApiError", "DataManager", "LocalItemStore"]
