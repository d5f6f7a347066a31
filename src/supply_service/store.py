"""Whole-collection record storage on top of a key-value backend."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .backends import KeyValueBackend
from .database import StoreError

logger = logging.getLogger(__name__)

EMERGENCY_ITEMS = "emergency_items"
OUTBOUND_RECORDS = "outbound_records"
RETURN_RECORDS = "return_records"
BORROW_RECORDS = "borrow_records"
OPERATION_LOGS = "operation_logs"
DATA_BACKUPS = "data_backups"

ALL_COLLECTIONS = (
    EMERGENCY_ITEMS,
    OUTBOUND_RECORDS,
    RETURN_RECORDS,
    BORROW_RECORDS,
    OPERATION_LOGS,
    DATA_BACKUPS,
)

Record = Dict[str, Any]
Changes = Union[Mapping[str, Any], Callable[[Record], Mapping[str, Any]]]


class _IdClock:
    """Millisecond ids that never repeat within the process."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = RLock()

    def next(self) -> str:
        with self._lock:
            candidate = int(time.time() * 1000)
            if candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return str(candidate)


_id_clock = _IdClock()


def new_record_id() -> str:
    """Return a time-based record id."""

    return _id_clock.next()


def utc_timestamp(value: Optional[datetime] = None) -> str:
    """Serialize ``value`` (default: now) as an ISO-8601 UTC timestamp."""

    moment = value or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def _matches(record: Any, record_id: str) -> bool:
    return isinstance(record, dict) and record.get("id") == record_id


class CollectionStore:
    """CRUD over named collections, each stored as one JSON array.

    Every mutation reads the full collection, changes it in memory and writes
    the whole array back. Writes are guarded by the backend's version stamp,
    so a mutation that lost a race is replayed on a fresh read instead of
    overwriting the other writer.

    Backend failures never propagate: reads degrade to an empty list and
    writes to ``False``, with the error logged.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        prefix: str = "",
        max_retries: int = 5,
    ) -> None:
        self.backend = backend
        self.prefix = prefix
        self.max_retries = max(1, max_retries)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def _read_collection(self, key: str) -> Tuple[List[Any], int]:
        stored = await self.backend.read(self._key(key))
        if stored.value is None:
            return [], stored.version
        if not isinstance(stored.value, list):
            logger.warning(
                "Collection %s holds %s instead of a list; treating it as empty",
                key,
                type(stored.value).__name__,
            )
            return [], stored.version
        return stored.value, stored.version

    async def get(self, key: str) -> List[Any]:
        try:
            records, _ = await self._read_collection(key)
        except StoreError:
            logger.exception("Failed to read collection %s", key)
            return []
        return records

    async def set(self, key: str, records: Iterable[Any]) -> bool:
        try:
            await self.backend.write(self._key(key), list(records))
        except StoreError:
            logger.exception("Failed to write collection %s", key)
            return False
        return True

    async def _mutate(
        self,
        key: str,
        action: str,
        apply: Callable[[List[Any]], Optional[List[Any]]],
    ) -> bool:
        for attempt in range(1, self.max_retries + 1):
            try:
                records, version = await self._read_collection(key)
                updated = apply(records)
                if updated is None:
                    return False
                written = await self.backend.write(
                    self._key(key), updated, expected_version=version
                )
            except StoreError:
                logger.exception("Failed to %s record in collection %s", action, key)
                return False
            if written:
                return True
            logger.debug("Version conflict on %s during %s (attempt %d)", key, action, attempt)
        logger.warning(
            "Gave up on %s in collection %s after %d conflicting attempts",
            action,
            key,
            self.max_retries,
        )
        return False

    async def add(self, key: str, record: Mapping[str, Any]) -> bool:
        entry = dict(record)
        return await self._mutate(key, "add", lambda records: records + [entry])

    async def update(self, key: str, record_id: str, changes: Changes) -> bool:
        """Shallow-merge ``changes`` into the first record whose id matches.

        ``changes`` may be a callable; it receives the current record and
        returns the mapping to merge. Returns ``False`` without writing when
        no record matches.
        """

        def apply(records: List[Any]) -> Optional[List[Any]]:
            for index, record in enumerate(records):
                if not _matches(record, record_id):
                    continue
                patch = changes(record) if callable(changes) else changes
                merged = dict(record)
                merged.update(patch)
                records[index] = merged
                return records
            return None

        return await self._mutate(key, "update", apply)

    async def delete(self, key: str, record_id: str) -> bool:
        return await self._mutate(
            key,
            "delete",
            lambda records: [record for record in records if not _matches(record, record_id)],
        )

    async def log_operation(
        self, operation: str, details: str, operator: Optional[str] = "system"
    ) -> None:
        entry = {
            "id": new_record_id(),
            "timestamp": utc_timestamp(),
            "operation": operation,
            "details": details,
            "operator": operator or "system",
        }
        if not await self.add(OPERATION_LOGS, entry):
            logger.warning("Operation log entry %r was not recorded", operation)


__all__ = [
    "ALL_COLLECTIONS",
    "BORROW_RECORDS",
    "CollectionStore",
    "DATA_BACKUPS",
    "EMERGENCY_ITEMS",
    "OPERATION_LOGS",
    "OUTBOUND_RECORDS",
    "RETURN_RECORDS",
    "new_record_id",
    "utc_timestamp",
]
