"""Generic list/get/create/update/delete over generated instance tables."""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, List

from metaschema.definitions import SORT_ORDERS, field_names
from metaschema.errors import NotFoundError, ValidationFailedError
from metaschema.naming import SYSTEM_COLUMNS, is_safe_identifier, table_name

from validation_engine import ValidationEngine, is_uuid


logger = logging.getLogger("metaschema.crud")

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 20
UUID_SYSTEM_COLUMNS = ("id", "created_by", "updated_by")
TIMESTAMP_SYSTEM_COLUMNS = ("created_at", "updated_at")

Issue = Dict[str, Any]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _positive_int(value: Any, default: int) -> int | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    else:
        return None
    return number if number >= 1 else None


def _instance_key(instance_id: Any) -> str | None:
    if not is_uuid(instance_id):
        return None
    return str(uuid.UUID(str(instance_id)))


class GenericCrud:
    """Executes CRUD for any registered object type.

    The instance store is storage specific (``MemoryInstanceStore`` or
    ``DbInstanceStore``); everything else here is shared.
    """

    def __init__(self, object_registry, field_registry, validation_engine: ValidationEngine, instance_store) -> None:
        self._objects = object_registry
        self._fields = field_registry
        self._validator = validation_engine
        self._store = instance_store

    def _resolve(self, object_type: str) -> dict:
        object_def = None
        if is_safe_identifier(object_type):
            object_def = self._objects.get_object_by_short_name(object_type)
        if object_def is None:
            raise NotFoundError(
                f"Object type '{object_type}' not found",
                path="object_type",
                detail={"object_type": object_type},
            )
        return object_def

    def _resolved_fields(self, object_def: dict) -> list[dict]:
        return self._fields.get_fields_by_short_names(field_names(object_def))

    def _validate(self, object_def: dict, data: Any) -> dict:
        result = self._validator.validate(object_def, self._resolved_fields(object_def), data)
        if not result["valid"]:
            raise ValidationFailedError(
                f"Validation failed for object type '{object_def['short_name']}'",
                errors=result["errors"],
            )
        return result["data"]

    def _list_plan(
        self,
        object_def: dict,
        page: Any,
        page_size: Any,
        sort_by: str | None,
        sort_order: str | None,
        search: str | None,
        filters: dict | None,
    ) -> dict:
        errors: List[Issue] = []
        page_num = _positive_int(page, DEFAULT_PAGE)
        if page_num is None:
            errors.append(_issue("INVALID_PAGE", "page must be a positive integer", "page"))
        size = _positive_int(page_size, DEFAULT_PAGE_SIZE)
        if size is None:
            errors.append(_issue("INVALID_PAGE_SIZE", "page_size must be a positive integer", "page_size"))

        members = field_names(object_def)
        sortable = set(members) | set(SYSTEM_COLUMNS)
        display = object_def.get("display_properties") or {}
        if sort_by:
            order_column = sort_by
            direction = (sort_order or "asc").lower()
            if sort_by not in sortable:
                errors.append(_issue("INVALID_SORT_FIELD", f"Cannot sort by unknown field '{sort_by}'", "sort_by"))
        elif display.get("default_sort_field"):
            order_column = display["default_sort_field"]
            direction = (display.get("default_sort_order") or "asc").lower()
        else:
            order_column = "created_at"
            direction = "desc"
        if direction not in SORT_ORDERS:
            errors.append(_issue("INVALID_SORT_ORDER", "sort_order must be asc or desc", "sort_order"))

        field_by_name = {field["short_name"]: field for field in self._resolved_fields(object_def)}
        filter_pairs = []
        for column, raw_value in (filters or {}).items():
            if column not in sortable:
                errors.append(_issue("UNKNOWN_FILTER_FIELD", f"Cannot filter by unknown field '{column}'", column))
                continue
            value = raw_value
            field = field_by_name.get(column)
            if field is not None and raw_value is not None:
                value, issue = self._validator.coerce_value(field, raw_value)
                if issue:
                    errors.append(issue)
                    continue
            elif raw_value is not None and column in UUID_SYSTEM_COLUMNS:
                value = _instance_key(raw_value)
                if value is None:
                    errors.append(_issue("INVALID_FILTER", f"Filter {column} must be a UUID", column))
                    continue
            elif raw_value is not None and column in TIMESTAMP_SYSTEM_COLUMNS:
                _, issue = self._validator.coerce_value({"short_name": column, "datatype": "datetime"}, raw_value)
                if issue:
                    errors.append(_issue("INVALID_FILTER", f"Filter {column} must be an ISO datetime", column))
                    continue
            filter_pairs.append((column, value))

        if errors:
            raise ValidationFailedError("Invalid list parameters", errors=errors)

        return {
            "table": table_name(object_def["short_name"]),
            "search": {"term": search, "columns": list(display.get("searchable_fields") or [])} if search else None,
            "filters": filter_pairs,
            "order_by": {"column": order_column, "direction": direction},
            "limit": size,
            "offset": (page_num - 1) * size,
            "page": page_num,
        }

    def list_instances(
        self,
        object_type: str,
        page: Any = None,
        page_size: Any = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        search: str | None = None,
        filters: dict | None = None,
    ) -> dict:
        object_def = self._resolve(object_type)
        plan = self._list_plan(object_def, page, page_size, sort_by, sort_order, search, filters)
        rows, total = self._store.list_page(plan)
        return {
            "data": rows,
            "pagination": {
                "page": plan["page"],
                "page_size": plan["limit"],
                "total_items": total,
                "total_pages": math.ceil(total / plan["limit"]),
            },
        }

    def get_instance(self, object_type: str, instance_id: str) -> dict | None:
        object_def = self._resolve(object_type)
        key = _instance_key(instance_id)
        if key is None:
            return None
        return self._store.get(table_name(object_def["short_name"]), key)

    def create_instance(self, object_type: str, data: Any) -> dict:
        object_def = self._resolve(object_type)
        values = self._validate(object_def, data)
        row = self._store.insert(table_name(object_def["short_name"]), values)
        logger.info("instance_created object_type=%s id=%s", object_type, row.get("id"))
        return row

    def update_instance(self, object_type: str, instance_id: str, data: Any) -> dict | None:
        object_def = self._resolve(object_type)
        table = table_name(object_def["short_name"])
        key = _instance_key(instance_id)
        if key is None or self._store.get(table, key) is None:
            return None
        # same call as create: the patch is checked as a complete record
        values = self._validate(object_def, data)
        row = self._store.update(table, key, values)
        if row is not None:
            logger.info("instance_updated object_type=%s id=%s keys=%s", object_type, key, sorted(values.keys()))
        return row

    def delete_instance(self, object_type: str, instance_id: str) -> bool:
        object_def = self._resolve(object_type)
        key = _instance_key(instance_id)
        if key is None:
            return False
        deleted = self._store.delete(table_name(object_def["short_name"]), key)
        if deleted:
            logger.info("instance_deleted object_type=%s id=%s", object_type, key)
        return deleted
