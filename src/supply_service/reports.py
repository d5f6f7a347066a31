"""Spreadsheet export of the item collection."""
from __future__ import annotations

from datetime import datetime
from io import BytesIO
from typing import Any, Iterable, Sequence

import xlwt

ITEM_COLUMNS: Sequence[tuple[str, str]] = (
    ("名称", "name"),
    ("分类", "category"),
    ("数量", "quantity"),
    ("单位", "unit"),
    ("规格", "spec"),
    ("单价", "price"),
    ("总价值", "totalValue"),
    ("来源", "source"),
    ("日期", "date"),
    ("经办人", "operator"),
    ("用途", "usage"),
    ("备注", "notes"),
)


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return str(value)
    return value


def items_to_xls(items: Iterable[Any]) -> bytes:
    """Render items with Chinese column headers, one row per item.

    Records that are not JSON objects are skipped.
    """

    workbook = xlwt.Workbook(encoding="utf-8")
    sheet = workbook.add_sheet("应急物资")
    for col_index, (header, _) in enumerate(ITEM_COLUMNS):
        sheet.write(0, col_index, header)

    records = (item for item in items if isinstance(item, dict))
    for row_index, item in enumerate(records, start=1):
        for col_index, (_, field) in enumerate(ITEM_COLUMNS):
            sheet.write(row_index, col_index, _cell(item.get(field)))

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def timestamped_filename(prefix: str) -> str:
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return f"{prefix}_{timestamp}"


__all__ = ["ITEM_COLUMNS", "items_to_xls", "timestamped_filename"]
