"""Business logic for emergency-supply items and the operation log."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .store import (
    BORROW_RECORDS,
    EMERGENCY_ITEMS,
    OPERATION_LOGS,
    OUTBOUND_RECORDS,
    RETURN_RECORDS,
    CollectionStore,
    new_record_id,
    utc_timestamp,
)

LOW_STOCK_THRESHOLD = 5
DEFAULT_UNIT = "个"
DEFAULT_OPERATOR = "system"
REQUIRED_ITEM_FIELDS = ("name", "category", "quantity")
# Fields the server owns; client values for them are ignored on update.
_SERVER_FIELDS = frozenset({"id", "totalValue", "createdAt", "updatedAt"})
_UNCATEGORIZED_NAME = "未分类"


class MissingFieldsError(ValueError):
    """Raised when a create payload lacks one of the required fields."""

    def __init__(self, required: Iterable[str] = REQUIRED_ITEM_FIELDS) -> None:
        super().__init__("缺少必填字段")
        self.required = list(required)


def parse_quantity(value: Any) -> int:
    """Convert quantity inputs to a non-negative integer.

    Numeric strings are accepted and fractional values are truncated.
    """

    if isinstance(value, bool) or value is None:
        raise ValueError("Invalid quantity")
    if isinstance(value, int):
        quantity = value
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("Invalid quantity")
        quantity = int(value)
    else:
        text = str(value).strip()
        try:
            quantity = int(text)
        except ValueError:
            try:
                parsed = float(text)
            except ValueError:
                raise ValueError("Invalid quantity") from None
            if not math.isfinite(parsed):
                raise ValueError("Invalid quantity")
            quantity = int(parsed)
    if quantity < 0:
        raise ValueError("Quantity cannot be negative")
    return quantity


def parse_price(value: Any) -> float | int:
    """Convert price inputs to a number; blanks and garbage become ``0``."""

    price = as_number(value)
    if price < 0:
        raise ValueError("Price cannot be negative")
    return price


def as_number(value: Any) -> float | int:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else 0
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return 0
    return parsed if math.isfinite(parsed) else 0


def total_value(quantity: Any, price: Any) -> float | int:
    return as_number(quantity) * as_number(price)


def _stock_level(value: Any) -> Optional[float | int]:
    """Numeric quantity of a stored record, or ``None`` when it has none."""

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    if not text:
        return 0
    try:
        return float(text)
    except ValueError:
        return None


async def list_items(store: CollectionStore) -> List[Any]:
    return await store.get(EMERGENCY_ITEMS)


def calculate_stats(items: Iterable[Any]) -> Dict[str, Any]:
    """Aggregate value per category and collect low-stock items."""

    stats: Dict[str, Any] = {
        "totalItems": 0,
        "totalValue": 0,
        "categories": {},
        "lowStock": [],
    }
    for item in items:
        if not isinstance(item, dict):
            continue
        stats["totalItems"] += 1
        value = as_number(item.get("totalValue"))
        stats["totalValue"] += value

        category = item.get("category") or _UNCATEGORIZED_NAME
        entry = stats["categories"].setdefault(str(category), {"count": 0, "value": 0})
        entry["count"] += 1
        entry["value"] += value

        quantity = item.get("quantity")
        level = _stock_level(quantity)
        if level is not None and level < LOW_STOCK_THRESHOLD:
            stats["lowStock"].append(
                {
                    "id": item.get("id"),
                    "name": item.get("name"),
                    "quantity": quantity,
                    "unit": item.get("unit"),
                }
            )
    return stats


async def create_item(
    store: CollectionStore, data: Mapping[str, Any]
) -> Optional[Dict[str, Any]]:
    """Create and persist an item; ``None`` means the store rejected the write."""

    if not data.get("name") or not data.get("category") or data.get("quantity") is None:
        raise MissingFieldsError()

    quantity = parse_quantity(data["quantity"])
    price = parse_price(data.get("price"))
    now = datetime.now(timezone.utc)
    timestamp = utc_timestamp(now)
    item = {
        "id": new_record_id(),
        "name": data["name"],
        "category": data["category"],
        "quantity": quantity,
        "unit": data.get("unit") or DEFAULT_UNIT,
        "spec": data.get("spec") or "",
        "price": price,
        "source": data.get("source") or "",
        "date": data.get("date") or now.date().isoformat(),
        "operator": data.get("operator") or DEFAULT_OPERATOR,
        "usage": data.get("usage") or "",
        "notes": data.get("notes") or "",
        "totalValue": quantity * price,
        "createdAt": timestamp,
        "updatedAt": timestamp,
    }
    if not await store.add(EMERGENCY_ITEMS, item):
        return None
    await store.log_operation(
        "添加物资",
        f"添加物资: {item['name']}, 数量: {item['quantity']}{item['unit']}",
        item["operator"],
    )
    return item


async def update_item(
    store: CollectionStore, item_id: str, data: Mapping[str, Any]
) -> bool:
    """Merge ``data`` into the item and recompute ``totalValue`` from the result."""

    changes = {key: value for key, value in data.items() if key not in _SERVER_FIELDS}
    if "quantity" in changes:
        changes["quantity"] = parse_quantity(changes["quantity"])
    if "price" in changes:
        changes["price"] = parse_price(changes["price"])
    changes["updatedAt"] = utc_timestamp()

    def patch(current: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(changes)
        merged["totalValue"] = total_value(
            changes.get("quantity", current.get("quantity")),
            changes.get("price", current.get("price")),
        )
        return merged

    success = await store.update(EMERGENCY_ITEMS, item_id, patch)
    if success:
        await store.log_operation(
            "更新物资",
            f"更新物资ID: {item_id}",
            data.get("operator") or DEFAULT_OPERATOR,
        )
    return success


async def delete_item(store: CollectionStore, item_id: str) -> bool:
    success = await store.delete(EMERGENCY_ITEMS, item_id)
    if success:
        await store.log_operation("删除物资", f"删除物资ID: {item_id}", DEFAULT_OPERATOR)
    return success


async def list_operation_logs(
    store: CollectionStore, *, limit: Optional[int] = None
) -> List[Any]:
    entries = list(reversed(await store.get(OPERATION_LOGS)))
    if limit is not None and limit >= 0:
        return entries[:limit]
    return entries


async def export_collections(store: CollectionStore) -> Dict[str, List[Any]]:
    """Return every collection in the document shape accepted by migration."""

    return {
        "emergencyItems": await store.get(EMERGENCY_ITEMS),
        "outboundRecords": await store.get(OUTBOUND_RECORDS),
        "returnRecords": await store.get(RETURN_RECORDS),
        "borrowRecords": await store.get(BORROW_RECORDS),
        "operationLogs": await store.get(OPERATION_LOGS),
    }


__all__ = [
    "DEFAULT_OPERATOR",
    "DEFAULT_UNIT",
    "LOW_STOCK_THRESHOLD",
    "MissingFieldsError",
    "REQUIRED_ITEM_FIELDS",
    "as_number",
    "calculate_stats",
    "create_item",
    "delete_item",
    "export_collections",
    "list_items",
    "list_operation_logs",
    "parse_price",
    "parse_quantity",
    "total_value",
    "update_item",
]
