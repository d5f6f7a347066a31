"""Bulk import of JSON backup documents into the collection store."""
from __future__ import annotations

import logging
import random
from typing import Any, Callable, Dict, List, Mapping

from .crud import as_number, export_collections, total_value
from .schemas import ImportCounts, MigrationResult
from .store import (
    BORROW_RECORDS,
    DATA_BACKUPS,
    EMERGENCY_ITEMS,
    OUTBOUND_RECORDS,
    RETURN_RECORDS,
    CollectionStore,
    new_record_id,
    utc_timestamp,
)

logger = logging.getLogger(__name__)


def _coerce_id(value: Any) -> str:
    if value:
        return str(value)
    return f"{new_record_id()}{random.random()}"


def _int_or_zero(value: Any) -> int:
    return int(as_number(value))


def normalize_item(raw: Mapping[str, Any], timestamp: str) -> Dict[str, Any]:
    quantity = _int_or_zero(raw.get("quantity"))
    price = as_number(raw.get("price"))
    item = dict(raw)
    item.update(
        {
            "id": _coerce_id(raw.get("id")),
            "quantity": quantity,
            "price": price,
            "totalValue": total_value(quantity, price),
            "createdAt": raw.get("createdAt") or timestamp,
            "updatedAt": raw.get("updatedAt") or timestamp,
        }
    )
    return item


def normalize_record(raw: Mapping[str, Any], timestamp: str) -> Dict[str, Any]:
    record = dict(raw)
    record.update(
        {
            "id": _coerce_id(raw.get("id")),
            "quantity": _int_or_zero(raw.get("quantity")),
            "createdAt": raw.get("createdAt") or timestamp,
        }
    )
    return record


Normalizer = Callable[[Mapping[str, Any], str], Dict[str, Any]]

# (document field, collection key, normalizer, error label)
_CATEGORIES: List[tuple[str, str, Normalizer, str]] = [
    ("emergencyItems", EMERGENCY_ITEMS, normalize_item, "物资数据导入失败"),
    ("outboundRecords", OUTBOUND_RECORDS, normalize_record, "出库记录导入失败"),
    ("returnRecords", RETURN_RECORDS, normalize_record, "归还记录导入失败"),
    ("borrowRecords", BORROW_RECORDS, normalize_record, "借用记录导入失败"),
]


async def snapshot_collections(
    store: CollectionStore, *, reason: str, retention: int
) -> bool:
    """Append the current collections to the backups collection."""

    if retention <= 0:
        return True
    snapshot = {
        "id": new_record_id(),
        "timestamp": utc_timestamp(),
        "reason": reason,
        "data": await export_collections(store),
    }
    backups = await store.get(DATA_BACKUPS)
    backups.append(snapshot)
    return await store.set(DATA_BACKUPS, backups[-retention:])


async def migrate_data(
    store: CollectionStore,
    document: Mapping[str, Any],
    *,
    backup_retention: int = 10,
) -> MigrationResult:
    """Import each collection present in ``document`` independently.

    A category that fails is reported in ``errors`` and the remaining
    categories are still written.
    """

    if not await snapshot_collections(store, reason="migrate", retention=backup_retention):
        logger.warning("Pre-migration snapshot could not be stored")

    counts = ImportCounts()
    errors: List[str] = []
    timestamp = utc_timestamp()
    for field_name, key, normalize, error_label in _CATEGORIES:
        raw_records = document.get(field_name)
        if not isinstance(raw_records, list):
            continue
        if not all(isinstance(raw, Mapping) for raw in raw_records):
            errors.append(f"{error_label}: 记录格式无效")
            continue
        records = [normalize(raw, timestamp) for raw in raw_records]
        if await store.set(key, records):
            setattr(counts, field_name, len(records))
        else:
            errors.append(error_label)

    await store.log_operation(
        "数据迁移",
        (
            f"成功导入: 物资{counts.emergencyItems}条, "
            f"出库记录{counts.outboundRecords}条, "
            f"归还记录{counts.returnRecords}条, "
            f"借用记录{counts.borrowRecords}条"
        ),
        "system",
    )

    if errors:
        message = "数据迁移部分失败: " + ", ".join(errors)
        logger.warning(message)
    else:
        message = "数据迁移成功完成"
        logger.info("Migration imported %s", counts.model_dump())
    return MigrationResult(
        success=not errors,
        imported=counts,
        errors=errors,
        message=message,
    )


__all__ = ["migrate_data", "normalize_item", "normalize_record", "snapshot_collections"]
