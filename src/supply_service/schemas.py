"""Pydantic schemas used by the API."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Union

from pydantic import BaseModel, Field


class CategoryStats(BaseModel):
    count: int = 0
    value: Union[int, float] = 0


class LowStockItem(BaseModel):
    id: Any = None
    name: Any = None
    quantity: Union[int, float]
    unit: Any = None


class ItemStats(BaseModel):
    totalItems: int
    totalValue: Union[int, float]
    categories: Dict[str, CategoryStats]
    lowStock: List[LowStockItem]


class ItemListResponse(BaseModel):
    success: bool = True
    data: List[Any]


class ItemStatsResponse(BaseModel):
    success: bool = True
    data: ItemStats


class ItemCreatedResponse(BaseModel):
    success: bool = True
    data: Dict[str, Any]
    message: str


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class ImportCounts(BaseModel):
    emergencyItems: int = 0
    outboundRecords: int = 0
    returnRecords: int = 0
    borrowRecords: int = 0
    operationLogs: int = Field(0, description="Operation logs are never imported.")


class MigrationResult(BaseModel):
    success: bool
    imported: ImportCounts
    errors: List[str] = Field(default_factory=list)
    message: str


class OperationLogListResponse(BaseModel):
    success: bool = True
    data: List[Any]


class HealthStatus(BaseModel):
    status: Literal["ok"] = "ok"
    environment: str
    backend: str


__all__ = [
    "CategoryStats",
    "HealthStatus",
    "ImportCounts",
    "ItemCreatedResponse",
    "ItemListResponse",
    "ItemStats",
    "ItemStatsResponse",
    "LowStockItem",
    "MessageResponse",
    "MigrationResult",
    "OperationLogListResponse",
]
