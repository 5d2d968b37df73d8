"""In-memory object registry that keeps metadata and physical schema in step."""

from __future__ import annotations

import copy
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from metaschema.definitions import (
    field_names,
    migration_required,
    prepare_object,
    prepare_object_update,
    require_fields,
    resolve_references,
    sort_references,
)
from metaschema.errors import DuplicateKeyError, schema_change_error
from metaschema.naming import table_name
from metaschema.statement_hash import statements_hash
from metaschema.table_generator import TableGenerator

from app.stores import SchemaCatalogError
from field_registry import FieldRegistry


logger = logging.getLogger("metaschema.registry")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ObjectRegistry:
    """Object definitions backed by a schema catalog.

    ``catalog`` must provide ``transaction()``, ``apply(statement)``,
    ``has_table(name)`` and ``describe(name)``; ``app.stores.MemorySchemaCatalog``
    is the in-memory one.
    """

    def __init__(self, field_registry: FieldRegistry, table_generator: TableGenerator, catalog: Any) -> None:
        self._fields = field_registry
        self._generator = table_generator
        self._catalog = catalog
        self._objects: Dict[str, dict] = {}
        self._audit: Dict[str, List[dict]] = {}
        field_registry.bind_reference_lookup(self.objects_referencing_field)

    @contextmanager
    def _transaction(self):
        objects = copy.deepcopy(self._objects)
        audit = copy.deepcopy(self._audit)
        try:
            with self._catalog.transaction():
                yield
        except Exception:
            self._objects = objects
            self._audit = audit
            raise

    def _resolve_fields(self, names: List[str]) -> list[dict]:
        fields = self._fields.get_fields_by_short_names(names)
        require_fields(names, fields)
        return fields

    def _append_audit(self, short_name: str, action: str, statements: List[dict]) -> dict:
        entry = {
            "audit_id": str(uuid.uuid4()),
            "object_short_name": short_name,
            "action": action,
            "statements": [stmt["sql"] for stmt in statements],
            "statements_hash": statements_hash(statements),
            "at": _now(),
        }
        self._audit.setdefault(short_name, []).append(entry)
        return entry

    def _public(self, record: dict) -> dict:
        record = copy.deepcopy(record)
        record["fields"] = sort_references(record.get("fields") or [])
        return record

    def get_object_by_short_name(self, short_name: str) -> dict | None:
        record = self._objects.get(short_name)
        return self._public(record) if record else None

    def get_all_objects(self) -> list[dict]:
        return [self._public(record) for record in reversed(list(self._objects.values()))]

    def objects_referencing_field(self, field_short_name: str) -> list[str]:
        return sorted(
            name for name, record in self._objects.items() if field_short_name in field_names(record)
        )

    def _apply(self, statements: List[dict]) -> None:
        for statement in statements:
            try:
                self._catalog.apply(statement)
            except SchemaCatalogError as exc:
                logger.warning("ddl_failed op=%s table=%s error=%s", statement.get("op"), statement.get("table"), exc)
                raise schema_change_error(str(exc), statement, exc.code) from exc

    def register_object(self, payload: dict) -> dict:
        definition = prepare_object(payload)
        short_name = definition["short_name"]
        table = table_name(short_name)
        with self._transaction():
            if short_name in self._objects:
                raise DuplicateKeyError(
                    f"Object with short name '{short_name}' already exists",
                    path="short_name",
                    detail={"short_name": short_name},
                )
            fields = self._resolve_fields(field_names(definition))
            now = _now()
            record = {
                **definition,
                "id": str(uuid.uuid4()),
                "fields": resolve_references(definition["fields"], fields),
                "created_at": now,
                "updated_at": now,
            }
            self._objects[short_name] = record
            if self._catalog.has_table(table):
                raise DuplicateKeyError(
                    f"Table '{table}' already exists",
                    path="short_name",
                    detail={"table": table},
                )
            statements = self._generator.full_create(record, fields)
            self._apply(statements)
            self._append_audit(short_name, "register", statements)
        logger.info("object_registered short_name=%s table=%s statements=%s", short_name, table, len(statements))
        return self._public(record)

    def _plan_update(self, short_name: str, changes: dict) -> dict | None:
        existing = self._objects.get(short_name)
        if existing is None:
            return None
        patch, merged = prepare_object_update(existing, changes)
        new_fields = None
        if "fields" in patch:
            new_fields = self._resolve_fields(field_names(merged))
            merged["fields"] = resolve_references(merged["fields"], new_fields)
        statements: List[dict] = []
        if migration_required(patch):
            old_fields = self._fields.get_fields_by_short_names(field_names(existing))
            if new_fields is None:
                new_fields = old_fields
            statements = self._generator.migration(existing, old_fields, merged, new_fields)
        return {"patch": patch, "merged": merged, "statements": statements}

    def preview_update(self, short_name: str, changes: dict) -> dict | None:
        plan = self._plan_update(short_name, changes)
        if plan is None:
            return None
        return {
            "short_name": short_name,
            "statements": plan["statements"],
            "statements_hash": statements_hash(plan["statements"]),
        }

    def update_object(self, short_name: str, changes: dict) -> dict | None:
        plan = self._plan_update(short_name, changes)
        if plan is None:
            return None
        merged = plan["merged"]
        merged["updated_at"] = _now()
        with self._transaction():
            self._objects[short_name] = merged
            self._apply(plan["statements"])
            self._append_audit(short_name, "update", plan["statements"])
        logger.info(
            "object_updated short_name=%s keys=%s statements=%s",
            short_name,
            sorted(plan["patch"].keys()),
            len(plan["statements"]),
        )
        return self._public(merged)

    def delete_object(self, short_name: str) -> bool:
        if short_name not in self._objects:
            return False
        with self._transaction():
            del self._objects[short_name]
            self._append_audit(short_name, "delete", [])
        logger.warning("object_deleted short_name=%s table_retained=%s", short_name, table_name(short_name))
        return True

    def schema_history(self, short_name: str) -> list[dict]:
        return [copy.deepcopy(entry) for entry in reversed(self._audit.get(short_name, []))]

    def describe_storage(self, short_name: str) -> dict | None:
        return self._catalog.describe(table_name(short_name))
