"""Entry point for the FastAPI-powered list and catalog service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import Settings, settings
from .database import Database
from .errors import (
    Conflict,
    IdentityAmbiguous,
    IdentityInsufficient,
    InvalidState,
    MediaMeshError,
    NotFound,
    PermissionDenied,
    StorageError,
)
from .models import CanonicalItem, RawItem, SmartCriteria
from .services.catalog_query import CatalogQuery, HttpCatalogQuery, LocalCatalogQuery
from .services.identity import IdentityResolver
from .services.ledger import ChangeLedger
from .services.list_engine import ListEngine
from .services.permissions import PermissionGuard
from .services.smart_lists import SmartListEvaluator, SmartListScheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[MediaMeshError], int] = {
    NotFound: 404,
    PermissionDenied: 403,
    InvalidState: 409,
    IdentityAmbiguous: 409,
    Conflict: 409,
    IdentityInsufficient: 422,
    StorageError: 503,
}

app: FastAPI


@dataclass
class ServiceContainer:
    """Core services shared by the request handlers."""

    resolver: IdentityResolver
    lists: ListEngine
    guard: PermissionGuard
    ledger: ChangeLedger
    smart_lists: SmartListEvaluator


def build_services(
    database: Database,
    *,
    app_settings: Settings | None = None,
    catalog: CatalogQuery | None = None,
) -> ServiceContainer:
    app_settings = app_settings or settings
    session_factory = database.session_factory
    guard = PermissionGuard(app_settings, session_factory)
    ledger = ChangeLedger(session_factory)
    engine = ListEngine(app_settings, session_factory, guard, ledger)
    evaluator = SmartListEvaluator(
        app_settings,
        session_factory,
        engine,
        catalog or LocalCatalogQuery(session_factory),
    )
    return ServiceContainer(
        resolver=IdentityResolver(app_settings, session_factory),
        lists=engine,
        guard=guard,
        ledger=ledger,
        smart_lists=evaluator,
    )


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    catalog: CatalogQuery | None = None
    if settings.catalog_search_url is not None:
        search_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.catalog_search_url),
                timeout=httpx.Timeout(20.0, connect=10.0),
            )
        )
        catalog = HttpCatalogQuery(search_client)

    database = Database(settings.database_url)
    await database.create_all()
    services = build_services(database, catalog=catalog)

    scheduler: SmartListScheduler | None = None
    if settings.smart_refresh_interval_seconds > 0:
        scheduler = SmartListScheduler(services.smart_lists)
        scheduler.start()

    fastapi_app.state.services = services
    fastapi_app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        if scheduler is not None:
            await scheduler.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Canonical media identities and collaborative ordered lists",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_services(app: FastAPI) -> ServiceContainer:
    services = getattr(app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialised")
    return services


def _principal(request: Request) -> int:
    raw = request.headers.get("x-user-id")
    if raw is None or not raw.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    try:
        user_id = int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="X-User-Id must be an integer") from exc
    if user_id <= 0:
        raise HTTPException(status_code=400, detail="X-User-Id must be positive")
    return user_id


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


def _item_ids(payload: dict[str, Any], key: str = "itemIds") -> list[int]:
    raw = payload.get(key)
    if not isinstance(raw, list):
        raise HTTPException(status_code=400, detail=f"{key} must be a list of ids")
    try:
        return [int(value) for value in raw]
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"{key} must contain integers") from exc


def _int_field(payload: dict[str, Any], key: str) -> int:
    try:
        return int(payload[key])
    except KeyError as exc:
        raise HTTPException(status_code=400, detail=f"{key} is required") from exc
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"{key} must be an integer") from exc


def _criteria(payload: dict[str, Any]) -> SmartCriteria:
    raw = payload.get("criteria")
    if not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail="criteria must be an object")
    try:
        return SmartCriteria.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400, detail=exc.errors(include_url=False, include_context=False)
        ) from exc


def _list_response(container: CanonicalItem) -> dict[str, Any]:
    data = container.list_data
    return {
        **container.to_response(),
        "description": data.description,
        "ownerId": data.owner_id,
        "isPublic": data.is_public,
        "isSmart": data.is_smart,
        "criteria": (
            data.smart_criteria.model_dump(mode="json") if data.smart_criteria else None
        ),
        "itemCount": data.item_count,
        "items": [
            {"itemId": entry.item_id, "position": entry.position}
            for entry in data.items
        ],
        "lastModified": data.last_modified.isoformat() if data.last_modified else None,
        "modifiedBy": data.modified_by,
        "autoUpdateTime": (
            data.auto_update_time.isoformat() if data.auto_update_time else None
        ),
    }


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(MediaMeshError)
    async def _core_error(_: Request, exc: MediaMeshError) -> JSONResponse:
        status = ERROR_STATUS.get(type(exc), 400)
        return JSONResponse(exc.to_payload(), status_code=status)

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        database: Database | None = getattr(fastapi_app.state, "database", None)
        if database is None:
            raise RuntimeError("Database not initialised")
        await database.ping()
        return {"status": "ok"}

    @fastapi_app.post("/api/items/resolve")
    async def resolve_item(request: Request) -> dict[str, Any]:
        services = get_services(fastapi_app)
        payload = await _json_body(request)
        try:
            raw = RawItem.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=400, detail=exc.errors(include_url=False, include_context=False)
            ) from exc
        item = await services.resolver.resolve(raw)
        return item.to_response()

    @fastapi_app.get("/api/items/{item_id}")
    async def get_item(item_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        item = await services.resolver.get_item(item_id)
        return item.to_response()

    @fastapi_app.post("/api/lists", status_code=201)
    async def create_list(request: Request) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        payload = await _json_body(request)
        kind = payload.get("type") or "playlist"
        container = await services.lists.create(
            user_id,
            str(payload.get("title") or ""),
            payload.get("description"),
            kind=kind,
            is_public=bool(payload.get("isPublic", False)),
        )
        return _list_response(container)

    @fastapi_app.post("/api/lists/smart", status_code=201)
    async def create_smart_list(request: Request) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        payload = await _json_body(request)
        criteria = _criteria(payload)
        container = await services.smart_lists.create_smart(
            user_id,
            str(payload.get("title") or ""),
            payload.get("description"),
            criteria,
            kind=payload.get("type") or "playlist",
        )
        return _list_response(container)

    @fastapi_app.get("/api/lists")
    async def own_lists(request: Request, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        lists = await services.lists.lists_for_owner(user_id, limit=limit, offset=offset)
        return {"lists": [_list_response(container) for container in lists]}

    @fastapi_app.get("/api/lists/shared")
    async def shared_lists(request: Request) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        lists = await services.lists.shared_with(user_id)
        return {"lists": [_list_response(container) for container in lists]}

    @fastapi_app.get("/api/lists/{list_id}")
    async def get_list(request: Request, list_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        container = await services.lists.get(list_id, _principal(request))
        return _list_response(container)

    @fastapi_app.patch("/api/lists/{list_id}")
    async def update_list(request: Request, list_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        payload = await _json_body(request)
        is_public = payload.get("isPublic")
        container = await services.lists.update(
            list_id,
            user_id,
            title=payload.get("title"),
            description=payload.get("description"),
            is_public=bool(is_public) if is_public is not None else None,
            item_ids=_item_ids(payload) if "itemIds" in payload else None,
        )
        return _list_response(container)

    @fastapi_app.delete("/api/lists/{list_id}", status_code=204)
    async def delete_list(request: Request, list_id: int) -> None:
        services = get_services(fastapi_app)
        await services.lists.delete(list_id, _principal(request))

    @fastapi_app.get("/api/lists/{list_id}/items")
    async def list_entries(
        request: Request, list_id: int, page: int = 0, size: int = 50
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        entries = await services.lists.entries(
            list_id, _principal(request), page=page, size=size
        )
        return {
            "page": page,
            "items": [entry.model_dump(mode="json") for entry in entries],
        }

    @fastapi_app.post("/api/lists/{list_id}/items")
    async def add_list_item(request: Request, list_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        payload = await _json_body(request)
        container = await services.lists.add_item(
            list_id, _int_field(payload, "itemId"), user_id
        )
        return _list_response(container)

    @fastapi_app.put("/api/lists/{list_id}/items")
    async def replace_list_items(request: Request, list_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        payload = await _json_body(request)
        container = await services.lists.replace_all(list_id, _item_ids(payload), user_id)
        return _list_response(container)

    @fastapi_app.delete("/api/lists/{list_id}/items/{item_id}")
    async def remove_list_item(
        request: Request, list_id: int, item_id: int, position: int | None = None
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        if position is None:
            container = await services.lists.remove_item(list_id, item_id, user_id)
        else:
            container = await services.lists.remove_item_at_position(
                list_id, item_id, position, user_id
            )
        return _list_response(container)

    @fastapi_app.put("/api/lists/{list_id}/order")
    async def reorder_list(request: Request, list_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        payload = await _json_body(request)
        container = await services.lists.reorder(list_id, _item_ids(payload), user_id)
        return _list_response(container)

    @fastapi_app.put("/api/lists/{list_id}/criteria")
    async def update_criteria(request: Request, list_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        payload = await _json_body(request)
        container = await services.smart_lists.update_criteria(
            list_id, _criteria(payload), user_id
        )
        return _list_response(container)

    @fastapi_app.post("/api/lists/{list_id}/refresh")
    async def refresh_list(request: Request, list_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        container = await services.smart_lists.refresh(list_id, _principal(request))
        return _list_response(container)

    @fastapi_app.get("/api/lists/{list_id}/history")
    async def list_history(
        request: Request, list_id: int, item_id: int | None = None
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        records = await services.lists.history(
            list_id, _principal(request), item_id=item_id
        )
        return {"changes": [record.model_dump(mode="json") for record in records]}

    @fastapi_app.get("/api/lists/{list_id}/collaborators")
    async def list_collaborators(request: Request, list_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        collaborators = await services.guard.collaborators(_principal(request), list_id)
        return {
            "collaborators": [
                collaborator.model_dump(mode="json") for collaborator in collaborators
            ]
        }

    @fastapi_app.post("/api/lists/{list_id}/collaborators")
    async def share_list(request: Request, list_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = _principal(request)
        payload = await _json_body(request)
        collaborator = await services.guard.share_with(
            user_id,
            list_id,
            _int_field(payload, "userId"),
            str(payload.get("permission") or ""),
        )
        return collaborator.model_dump(mode="json")

    @fastapi_app.delete("/api/lists/{list_id}/collaborators/{target_id}", status_code=204)
    async def remove_collaborator(request: Request, list_id: int, target_id: int) -> None:
        services = get_services(fastapi_app)
        await services.guard.remove_collaborator(_principal(request), list_id, target_id)


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    from mediamesh.__main__ import main

    main()
