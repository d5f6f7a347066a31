"""FastAPI router configuration."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, Response

from . import crud, schemas
from .backends import create_backend
from .config import Settings, get_settings
from .migration import migrate_data
from .reports import items_to_xls, timestamped_filename
from .store import CollectionStore

logger = logging.getLogger(__name__)

router = APIRouter()

_ITEM_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
_MIGRATE_METHODS = "POST, OPTIONS"


def provide_settings() -> Settings:
    """Dependency returning the active :class:`Settings` instance."""

    return get_settings()


def get_store(request: Request) -> CollectionStore:
    """Dependency returning the store created during application startup."""

    return request.app.state.store


def _json_error(message: str, status_code: int = 400, **extra: Any) -> JSONResponse:
    payload: Dict[str, Any] = {"error": message}
    payload.update(extra)
    return JSONResponse(payload, status_code=status_code)


@router.get("/health", response_model=schemas.HealthStatus, tags=["system"])
async def health_check(settings: Settings = Depends(provide_settings)) -> schemas.HealthStatus:
    return schemas.HealthStatus(environment=settings.environment, backend=settings.kv_backend)


@router.get("/items", response_model=None, tags=["items"])
async def get_items(
    action: Optional[str] = None, store: CollectionStore = Depends(get_store)
) -> Any:
    if action == "list":
        items = await crud.list_items(store)
        return schemas.ItemListResponse(data=items)
    if action == "stats":
        items = await crud.list_items(store)
        return schemas.ItemStatsResponse(data=crud.calculate_stats(items))
    return _json_error("无效的操作")


@router.post(
    "/items",
    response_model=schemas.ItemCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["items"],
)
async def create_item(request: Request, store: CollectionStore = Depends(get_store)) -> Any:
    payload = await request.json()
    if not isinstance(payload, dict):
        return _json_error("无效的数据格式")
    try:
        item = await crud.create_item(store, payload)
    except crud.MissingFieldsError as exc:
        return _json_error(str(exc), required=exc.required)
    except ValueError as exc:
        return _json_error(str(exc))
    if item is None:
        return _json_error("添加物资失败", status.HTTP_500_INTERNAL_SERVER_ERROR)
    return schemas.ItemCreatedResponse(data=item, message="物资添加成功")


@router.put("/items", response_model=schemas.MessageResponse, tags=["items"])
async def update_item(
    request: Request,
    item_id: Optional[str] = Query(None, alias="id"),
    store: CollectionStore = Depends(get_store),
) -> Any:
    if not item_id:
        return _json_error("缺少物资ID")
    payload = await request.json()
    if not isinstance(payload, dict):
        return _json_error("无效的数据格式")
    try:
        success = await crud.update_item(store, item_id, payload)
    except ValueError as exc:
        return _json_error(str(exc))
    if not success:
        return _json_error("更新物资失败", status.HTTP_500_INTERNAL_SERVER_ERROR)
    return schemas.MessageResponse(message="物资更新成功")


@router.delete("/items", response_model=schemas.MessageResponse, tags=["items"])
async def delete_item(
    item_id: Optional[str] = Query(None, alias="id"),
    store: CollectionStore = Depends(get_store),
) -> Any:
    if not item_id:
        return _json_error("缺少物资ID")
    if not await crud.delete_item(store, item_id):
        return _json_error("删除物资失败", status.HTTP_500_INTERNAL_SERVER_ERROR)
    return schemas.MessageResponse(message="物资删除成功")


@router.post("/migrate", response_model=schemas.MigrationResult, tags=["migration"])
async def migrate(
    request: Request,
    store: CollectionStore = Depends(get_store),
    settings: Settings = Depends(provide_settings),
) -> Any:
    payload = await request.json()
    if not isinstance(payload, dict):
        return _json_error("无效的数据格式")
    result = await migrate_data(store, payload, backup_retention=settings.backup_retention)
    if not result.success:
        return JSONResponse(
            result.model_dump(), status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        )
    return result


@router.api_route(
    "/migrate", methods=["GET", "PUT", "DELETE", "PATCH"], include_in_schema=False
)
async def migrate_method_not_allowed() -> JSONResponse:
    return _json_error("只支持POST请求", status.HTTP_405_METHOD_NOT_ALLOWED)


@router.get("/logs", response_model=schemas.OperationLogListResponse, tags=["logs"])
async def list_logs(
    limit: Optional[str] = None, store: CollectionStore = Depends(get_store)
) -> Any:
    limit_value: Optional[int]
    if limit is None or limit == "":
        limit_value = None
    else:
        try:
            limit_value = int(limit)
        except ValueError:
            return _json_error("Invalid limit")
        if limit_value < 0:
            return _json_error("Invalid limit")
    entries = await crud.list_operation_logs(store, limit=limit_value)
    return schemas.OperationLogListResponse(data=entries)


@router.get("/export", response_model=None, tags=["export"])
async def export_data(
    export_format: str = Query("json", alias="format"),
    store: CollectionStore = Depends(get_store),
) -> Any:
    if export_format == "json":
        return await crud.export_collections(store)
    if export_format == "xls":
        content = items_to_xls(await crud.list_items(store))
        filename = timestamped_filename("emergency_items")
        return Response(
            content,
            media_type="application/vnd.ms-excel",
            headers={"Content-Disposition": f"attachment; filename={filename}.xls"},
        )
    return _json_error("Unsupported export format")


def _cors_headers(path: str, settings: Settings) -> Dict[str, str]:
    methods = _MIGRATE_METHODS if path.rstrip("/").endswith("/migrate") else _ITEM_METHODS
    return {
        "Access-Control-Allow-Origin": settings.access_control_allow_origin,
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": "Content-Type",
    }


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        backend = create_backend(settings)
        await backend.initialize()
        app.state.store = CollectionStore(
            backend,
            prefix=settings.kv_prefix,
            max_retries=settings.store_max_retries,
        )
        try:
            yield
        finally:
            await backend.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.dependency_overrides[provide_settings] = lambda: settings
    app.include_router(router, prefix=settings.api_prefix)

    @app.middleware("http")
    async def cors_and_errors(request: Request, call_next: Any) -> Response:
        headers = _cors_headers(request.url.path, settings)
        if request.method == "OPTIONS":
            return Response(status_code=status.HTTP_200_OK, headers=headers)
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled error for %s %s", request.method, request.url.path)
            response = JSONResponse(
                {"error": "服务器内部错误", "message": str(exc)},
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        response.headers.update(headers)
        return response

    return app


app = create_app()


__all__ = ["app", "create_app", "get_store", "provide_settings"]
