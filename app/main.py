"""FastAPI surface for the metadata registry and generic instance CRUD."""

from __future__ import annotations

import os
import sys
import time
import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

from app.db import get_db_stats, reset_db_stats
from app.stores import MemoryInstanceStore, MemorySchemaCatalog
from app.stores_db import (
    DbFieldRegistry,
    DbInstanceStore,
    DbObjectRegistry,
    DbTxManager,
    ensure_metadata_schema,
)
from metaschema.errors import (
    DuplicateKeyError,
    MalformedFieldGroupError,
    MetadataError,
    NotFoundError,
    ReferentialIntegrityError,
    ValidationFailedError,
)
from metaschema.table_generator import TableGenerator
from field_registry import FieldRegistry
from generic_crud import GenericCrud
from object_registry import ObjectRegistry
from validation_engine import ValidationEngine


app = FastAPI(title="Metaschema Engine")
logger = logging.getLogger("metaschema")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
APP_ENV = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
IS_DEV = APP_ENV == "dev"
REQ_SLOW_MS = float(os.getenv("METASCHEMA_REQ_SLOW_MS", "250"))

table_generator = TableGenerator()
validation_engine = ValidationEngine()

if USE_DB:
    ensure_metadata_schema()
    tx_mgr = DbTxManager()
    field_registry = DbFieldRegistry()
    object_registry = DbObjectRegistry(field_registry, table_generator, tx_mgr)
    instance_store = DbInstanceStore()
else:
    catalog = MemorySchemaCatalog()
    field_registry = FieldRegistry()
    object_registry = ObjectRegistry(field_registry, table_generator, catalog)
    instance_store = MemoryInstanceStore(catalog)

crud = GenericCrud(object_registry, field_registry, validation_engine, instance_store)

_ERROR_STATUS = {
    DuplicateKeyError: 409,
    NotFoundError: 404,
    ValidationFailedError: 400,
    ReferentialIntegrityError: 409,
    MalformedFieldGroupError: 400,
}
_LIST_PARAMS = {"page", "page_size", "pageSize", "sort_by", "sortBy", "sort_order", "sortOrder", "search"}


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_stats = get_db_stats()
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        db_stats.get("total_ms", 0.0),
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            response.status_code,
        )
    if IS_DEV:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-Queries"] = str(db_stats.get("queries", 0))
    return response


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _validation_response(exc: ValidationFailedError, status: int = 400) -> JSONResponse:
    body = {"ok": False, "message": exc.message, "errors": exc.to_issues(), "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.exception_handler(MetadataError)
async def metadata_exception_handler(request: Request, exc: MetadataError):
    status = _ERROR_STATUS.get(type(exc), 400)
    if isinstance(exc, ValidationFailedError):
        return _validation_response(exc, status)
    return _error_response(exc.code, exc.message, exc.path, exc.detail, status=status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationFailedError(
            "Request body must be JSON",
            errors=[{"code": "INVALID_JSON", "message": "Request body must be JSON", "path": None, "detail": None}],
        )
    if not isinstance(body, dict):
        raise ValidationFailedError(
            "Request body must be an object",
            errors=[{"code": "INVALID_PAYLOAD", "message": "Request body must be an object", "path": None, "detail": None}],
        )
    return body


def _instance_payload(body: dict) -> dict:
    # {"data": {...}} and bare payloads are both accepted
    data = body.get("data")
    return data if isinstance(data, dict) and len(body) == 1 else body


@app.get("/health")
async def health() -> dict:
    return {"ok": True, "storage": "postgres" if USE_DB else "memory"}


@app.post("/metadata/fields")
async def create_field(request: Request):
    body = await _safe_json(request)
    field = field_registry.register_field(body)
    return _ok_response({"field": field}, status=201)


@app.get("/metadata/fields")
def list_fields():
    return _ok_response({"fields": field_registry.get_all_fields()})


@app.get("/metadata/fields/{short_name}")
def get_field(short_name: str):
    field = field_registry.get_field_by_short_name(short_name)
    if field is None:
        return _error_response("FIELD_NOT_FOUND", f"Field '{short_name}' not found", "short_name", status=404)
    return _ok_response({"field": field})


@app.put("/metadata/fields/{short_name}")
async def update_field(short_name: str, request: Request):
    body = await _safe_json(request)
    field = field_registry.update_field(short_name, body)
    if field is None:
        return _error_response("FIELD_NOT_FOUND", f"Field '{short_name}' not found", "short_name", status=404)
    return _ok_response({"field": field})


@app.delete("/metadata/fields/{short_name}")
def delete_field(short_name: str):
    if not field_registry.delete_field(short_name):
        return _error_response("FIELD_NOT_FOUND", f"Field '{short_name}' not found", "short_name", status=404)
    return _ok_response({"deleted": True})


@app.post("/metadata/objects")
async def create_object(request: Request):
    body = await _safe_json(request)
    obj = object_registry.register_object(body)
    return _ok_response({"object": obj}, status=201)


@app.get("/metadata/objects")
def list_objects():
    return _ok_response({"objects": object_registry.get_all_objects()})


@app.get("/metadata/objects/{short_name}")
def get_object(short_name: str):
    obj = object_registry.get_object_by_short_name(short_name)
    if obj is None:
        return _error_response("OBJECT_NOT_FOUND", f"Object '{short_name}' not found", "short_name", status=404)
    return _ok_response({"object": obj})


@app.put("/metadata/objects/{short_name}")
async def update_object(short_name: str, request: Request):
    body = await _safe_json(request)
    obj = object_registry.update_object(short_name, body)
    if obj is None:
        return _error_response("OBJECT_NOT_FOUND", f"Object '{short_name}' not found", "short_name", status=404)
    return _ok_response({"object": obj})


@app.post("/metadata/objects/{short_name}/preview")
async def preview_object_update(short_name: str, request: Request):
    body = await _safe_json(request)
    preview = object_registry.preview_update(short_name, body)
    if preview is None:
        return _error_response("OBJECT_NOT_FOUND", f"Object '{short_name}' not found", "short_name", status=404)
    return _ok_response({"preview": preview})


@app.get("/metadata/objects/{short_name}/history")
def object_history(short_name: str):
    return _ok_response({"history": object_registry.schema_history(short_name)})


@app.get("/metadata/objects/{short_name}/storage")
def object_storage(short_name: str):
    storage = object_registry.describe_storage(short_name)
    if storage is None:
        return _error_response("TABLE_NOT_FOUND", f"No storage table for '{short_name}'", "short_name", status=404)
    return _ok_response({"storage": storage})


@app.delete("/metadata/objects/{short_name}")
def delete_object(short_name: str):
    if not object_registry.delete_object(short_name):
        return _error_response("OBJECT_NOT_FOUND", f"Object '{short_name}' not found", "short_name", status=404)
    return _ok_response({"deleted": True})


@app.get("/objects/{object_type}/instances")
def list_instances(object_type: str, request: Request):
    query = request.query_params
    filters = {key: value for key, value in query.items() if key not in _LIST_PARAMS}
    result = crud.list_instances(
        object_type,
        page=query.get("page"),
        page_size=query.get("page_size") or query.get("pageSize"),
        sort_by=query.get("sort_by") or query.get("sortBy"),
        sort_order=query.get("sort_order") or query.get("sortOrder"),
        search=query.get("search"),
        filters=filters,
    )
    return _ok_response(result)


@app.get("/objects/{object_type}/instances/{instance_id}")
def get_instance(object_type: str, instance_id: str):
    row = crud.get_instance(object_type, instance_id)
    if row is None:
        return _error_response("INSTANCE_NOT_FOUND", "Instance not found", "instance_id", status=404)
    return _ok_response({"instance": row})


@app.post("/objects/{object_type}/instances")
async def create_instance(object_type: str, request: Request):
    body = await _safe_json(request)
    row = crud.create_instance(object_type, _instance_payload(body))
    return _ok_response({"instance": row}, status=201)


@app.put("/objects/{object_type}/instances/{instance_id}")
async def update_instance(object_type: str, instance_id: str, request: Request):
    body = await _safe_json(request)
    row = crud.update_instance(object_type, instance_id, _instance_payload(body))
    if row is None:
        return _error_response("INSTANCE_NOT_FOUND", "Instance not found", "instance_id", status=404)
    return _ok_response({"instance": row})


@app.delete("/objects/{object_type}/instances/{instance_id}")
def delete_instance(object_type: str, instance_id: str):
    if not crud.delete_instance(object_type, instance_id):
        return _error_response("INSTANCE_NOT_FOUND", "Instance not found", "instance_id", status=404)
    return _ok_response({"deleted": True})
