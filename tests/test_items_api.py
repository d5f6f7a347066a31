from __future__ import annotations

from typing import Any, Dict

import pytest
import xlrd
from httpx import ASGITransport, AsyncClient

from supply_service.api import create_app, get_store
from supply_service.crud import calculate_stats
from supply_service.reports import items_to_xls
from supply_service.store import EMERGENCY_ITEMS, OPERATION_LOGS, CollectionStore


async def _create(client: AsyncClient, **fields: Any) -> Dict[str, Any]:
    payload = {"name": "应急手电筒", "category": "照明器材", "quantity": 10, "price": 12.5}
    payload.update(fields)
    response = await client.post("/api/items", json=payload)
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["success"] is True
    return body["data"]


async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "environment": "test", "backend": "memory"}


async def test_list_starts_empty(client: AsyncClient) -> None:
    response = await client.get("/api/items", params={"action": "list"})
    assert response.status_code == 200
    assert response.json() == {"success": True, "data": []}


@pytest.mark.parametrize("params", [{"action": "export"}, {}])
async def test_unknown_action_is_rejected(client: AsyncClient, params: Dict[str, str]) -> None:
    response = await client.get("/api/items", params=params)
    assert response.status_code == 400
    assert "error" in response.json()


async def test_create_item_applies_defaults_and_total(
    client: AsyncClient, store: CollectionStore
) -> None:
    item = await _create(client, quantity="4", price="2.5")

    assert item["quantity"] == 4
    assert item["price"] == 2.5
    assert item["totalValue"] == 10
    assert item["unit"] == "个"
    assert item["operator"] == "system"
    assert item["spec"] == ""
    assert len(item["date"]) == 10
    assert item["createdAt"] == item["updatedAt"]
    assert item["id"].isdigit()

    stored = await store.get(EMERGENCY_ITEMS)
    assert stored == [item]

    logs = await store.get(OPERATION_LOGS)
    assert len(logs) == 1
    assert logs[0]["operation"] == "添加物资"
    assert logs[0]["details"] == "添加物资: 应急手电筒, 数量: 4个"


async def test_create_item_without_price_has_zero_value(client: AsyncClient) -> None:
    item = await _create(client, price=None, unit="箱", operator="李四")
    assert item["price"] == 0
    assert item["totalValue"] == 0
    assert item["unit"] == "箱"
    assert item["operator"] == "李四"


async def test_create_item_allows_zero_quantity(client: AsyncClient) -> None:
    item = await _create(client, quantity=0)
    assert item["quantity"] == 0
    assert item["totalValue"] == 0


@pytest.mark.parametrize(
    "payload",
    [
        {"category": "消防物资", "quantity": 1},
        {"name": "灭火器", "quantity": 1},
        {"name": "灭火器", "category": "消防物资"},
        {"name": "", "category": "消防物资", "quantity": 1},
        {"name": "灭火器", "category": "消防物资", "quantity": None},
    ],
)
async def test_create_item_requires_fields(
    client: AsyncClient, store: CollectionStore, payload: Dict[str, Any]
) -> None:
    response = await client.post("/api/items", json=payload)
    assert response.status_code == 400
    body = response.json()
    assert body["required"] == ["name", "category", "quantity"]
    assert await store.get(EMERGENCY_ITEMS) == []


@pytest.mark.parametrize("quantity", ["many", -1])
async def test_create_item_rejects_bad_quantity(client: AsyncClient, quantity: Any) -> None:
    response = await client.post(
        "/api/items", json={"name": "雨衣", "category": "防护用品", "quantity": quantity}
    )
    assert response.status_code == 400
    assert "quantity" in response.json()["error"].lower()


async def test_create_item_store_failure(client: AsyncClient, backend) -> None:
    backend.failing_keys.add(EMERGENCY_ITEMS)
    response = await client.post(
        "/api/items", json={"name": "雨衣", "category": "防护用品", "quantity": 2}
    )
    assert response.status_code == 500
    assert response.json() == {"error": "添加物资失败"}


async def test_update_price_uses_stored_quantity(
    client: AsyncClient, store: CollectionStore
) -> None:
    item = await _create(client, quantity=6, price=1)

    response = await client.put("/api/items", params={"id": item["id"]}, json={"price": 2.5})
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "物资更新成功"}

    stored = (await store.get(EMERGENCY_ITEMS))[0]
    assert stored["price"] == 2.5
    assert stored["quantity"] == 6
    assert stored["totalValue"] == 15
    assert stored["updatedAt"] >= item["updatedAt"]


async def test_update_quantity_uses_stored_price(
    client: AsyncClient, store: CollectionStore
) -> None:
    item = await _create(client, quantity=6, price=3)

    response = await client.put("/api/items", params={"id": item["id"]}, json={"quantity": 2})
    assert response.status_code == 200

    stored = (await store.get(EMERGENCY_ITEMS))[0]
    assert stored["quantity"] == 2
    assert stored["totalValue"] == 6


async def test_update_other_fields_keeps_total(
    client: AsyncClient, store: CollectionStore
) -> None:
    item = await _create(client, quantity=2, price=5)

    response = await client.put(
        "/api/items",
        params={"id": item["id"]},
        json={"notes": "物资位置3B", "id": "hijacked", "operator": "王五"},
    )
    assert response.status_code == 200

    stored = (await store.get(EMERGENCY_ITEMS))[0]
    assert stored["id"] == item["id"]
    assert stored["notes"] == "物资位置3B"
    assert stored["totalValue"] == 10

    logs = await store.get(OPERATION_LOGS)
    assert logs[-1]["operation"] == "更新物资"
    assert logs[-1]["operator"] == "王五"


async def test_update_ignores_client_supplied_totals(
    client: AsyncClient, store: CollectionStore
) -> None:
    item = await _create(client, quantity=2, price=3)

    response = await client.put(
        "/api/items",
        params={"id": item["id"]},
        json={"totalValue": 999, "createdAt": "1999-01-01T00:00:00.000Z"},
    )
    assert response.status_code == 200

    stored = (await store.get(EMERGENCY_ITEMS))[0]
    assert stored["totalValue"] == stored["quantity"] * stored["price"] == 6
    assert stored["createdAt"] == item["createdAt"]


async def test_update_requires_id(client: AsyncClient) -> None:
    response = await client.put("/api/items", json={"quantity": 1})
    assert response.status_code == 400
    assert response.json() == {"error": "缺少物资ID"}


async def test_update_unknown_id_fails(client: AsyncClient, store: CollectionStore) -> None:
    response = await client.put("/api/items", params={"id": "nope"}, json={"quantity": 1})
    assert response.status_code == 500
    assert response.json() == {"error": "更新物资失败"}
    assert await store.get(OPERATION_LOGS) == []


async def test_update_rejects_invalid_quantity(client: AsyncClient) -> None:
    item = await _create(client)
    response = await client.put("/api/items", params={"id": item["id"]}, json={"quantity": "x"})
    assert response.status_code == 400


async def test_delete_item(client: AsyncClient, store: CollectionStore) -> None:
    item = await _create(client)

    response = await client.delete("/api/items", params={"id": item["id"]})
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "物资删除成功"}
    assert await store.get(EMERGENCY_ITEMS) == []

    logs = await store.get(OPERATION_LOGS)
    assert [entry["operation"] for entry in logs] == ["添加物资", "删除物资"]


async def test_delete_unknown_id_still_logs(client: AsyncClient, store: CollectionStore) -> None:
    response = await client.delete("/api/items", params={"id": "ghost"})
    assert response.status_code == 200

    logs = await store.get(OPERATION_LOGS)
    assert len(logs) == 1
    assert logs[0]["details"] == "删除物资ID: ghost"


async def test_delete_requires_id(client: AsyncClient) -> None:
    response = await client.delete("/api/items")
    assert response.status_code == 400


async def test_stats_aggregation(client: AsyncClient, store: CollectionStore) -> None:
    await store.set(
        EMERGENCY_ITEMS,
        [
            {"id": "1", "name": "a1", "unit": "个", "category": "A", "totalValue": 10, "quantity": 2},
            {"id": "2", "name": "a2", "unit": "个", "category": "A", "totalValue": 5, "quantity": 1},
            {"id": "3", "name": "b1", "unit": "箱", "category": "B", "totalValue": 0, "quantity": 10},
        ],
    )

    response = await client.get("/api/items", params={"action": "stats"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["totalItems"] == 3
    assert data["totalValue"] == 15
    assert data["categories"] == {
        "A": {"count": 2, "value": 15},
        "B": {"count": 1, "value": 0},
    }
    assert data["lowStock"] == [
        {"id": "1", "name": "a1", "quantity": 2, "unit": "个"},
        {"id": "2", "name": "a2", "quantity": 1, "unit": "个"},
    ]


def test_calculate_stats_tolerates_sparse_records() -> None:
    stats = calculate_stats(
        [
            {"id": "1", "quantity": "3"},
            {"id": "2", "category": "C"},
            {"id": "3", "quantity": "很多"},
            {"id": "4", "quantity": "12"},
        ]
    )
    assert stats["totalValue"] == 0
    assert stats["categories"]["未分类"] == {"count": 3, "value": 0}
    assert stats["lowStock"] == [{"id": "1", "name": None, "quantity": "3", "unit": None}]


async def test_options_preflight(client: AsyncClient) -> None:
    response = await client.options("/api/items")
    assert response.status_code == 200
    assert response.content == b""
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.headers["access-control-allow-methods"] == "GET, POST, PUT, DELETE, OPTIONS"
    assert response.headers["access-control-allow-headers"] == "Content-Type"

    migrate = await client.options("/api/migrate")
    assert migrate.status_code == 200
    assert migrate.headers["access-control-allow-methods"] == "POST, OPTIONS"


async def test_cors_headers_on_regular_responses(client: AsyncClient) -> None:
    response = await client.get("/api/items", params={"action": "list"})
    assert response.headers["access-control-allow-origin"] == "*"


class _ExplodingStore:
    async def get(self, key: str) -> Any:
        raise RuntimeError("kv exploded")


async def test_unhandled_error_is_reported_as_500(settings) -> None:
    app = create_app(settings)
    app.dependency_overrides[get_store] = lambda: _ExplodingStore()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/items", params={"action": "list"})

    assert response.status_code == 500
    assert response.json() == {"error": "服务器内部错误", "message": "kv exploded"}
    assert response.headers["access-control-allow-origin"] == "*"


async def test_list_operation_logs(client: AsyncClient) -> None:
    item = await _create(client)
    await client.delete("/api/items", params={"id": item["id"]})

    response = await client.get("/api/logs")
    assert response.status_code == 200
    operations = [entry["operation"] for entry in response.json()["data"]]
    assert operations == ["删除物资", "添加物资"]

    limited = await client.get("/api/logs", params={"limit": 1})
    assert [entry["operation"] for entry in limited.json()["data"]] == ["删除物资"]

    invalid = await client.get("/api/logs", params={"limit": "-2"})
    assert invalid.status_code == 400


async def test_export_json_round_trips_through_migration(
    client: AsyncClient, settings
) -> None:
    await _create(client, name="帐篷", quantity=3, price=100)
    await _create(client, name="睡袋", quantity=20, price=50)

    exported = await client.get("/api/export")
    assert exported.status_code == 200
    document = exported.json()
    assert set(document) == {
        "emergencyItems",
        "outboundRecords",
        "returnRecords",
        "borrowRecords",
        "operationLogs",
    }

    from supply_service.backends import InMemoryBackend

    fresh_store = CollectionStore(InMemoryBackend())
    fresh_app = create_app(settings)
    fresh_app.dependency_overrides[get_store] = lambda: fresh_store
    async with AsyncClient(
        transport=ASGITransport(app=fresh_app), base_url="http://test"
    ) as fresh_client:
        response = await fresh_client.post("/api/migrate", json=document)
    assert response.status_code == 200
    assert response.json()["imported"]["emergencyItems"] == 2
    assert await fresh_store.get(EMERGENCY_ITEMS) == document["emergencyItems"]


async def test_export_xls(client: AsyncClient) -> None:
    await _create(client, name="急救包", quantity=7, price=30)

    response = await client.get("/api/export", params={"format": "xls"})
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/vnd.ms-excel"
    assert "attachment" in response.headers["content-disposition"]

    workbook = xlrd.open_workbook(file_contents=response.content)
    sheet = workbook.sheet_by_index(0)
    header = [str(value).strip() for value in sheet.row_values(0)]
    assert header[:4] == ["名称", "分类", "数量", "单位"]
    row = dict(zip(header, sheet.row_values(1)))
    assert row["名称"] == "急救包"
    assert row["数量"] == 7
    assert row["总价值"] == 210


def test_items_to_xls_skips_non_objects_and_blanks_missing_cells() -> None:
    content = items_to_xls([{"name": "雨衣", "quantity": 3, "notes": None}, "legacy-row"])

    sheet = xlrd.open_workbook(file_contents=content).sheet_by_index(0)
    assert sheet.nrows == 2
    row = dict(zip(sheet.row_values(0), sheet.row_values(1)))
    assert row["名称"] == "雨衣"
    assert row["备注"] == ""
    assert row["单价"] == ""


async def test_export_rejects_unknown_format(client: AsyncClient) -> None:
    response = await client.get("/api/export", params={"format": "pdf"})
    assert response.status_code == 400
