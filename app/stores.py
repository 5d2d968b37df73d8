"""In-memory physical schema and instance rows for USE_DB=0."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from metaschema.errors import ValidationFailedError


logger = logging.getLogger("metaschema.catalog")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class SchemaCatalogError(RuntimeError):
    """A DDL or DML step the catalog refuses, as the database would."""

    def __init__(self, message: str, code: str = "DDL_FAILED") -> None:
        super().__init__(message)
        self.code = code


class MemorySchemaCatalog:
    """Interprets generated DDL statements against in-memory tables.

    ``transaction()`` snapshots every table, index and row so a failing
    statement leaves the catalog exactly as it was.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, dict] = {}
        self._indexes: Dict[str, dict] = {}

    @contextmanager
    def transaction(self):
        tables = copy.deepcopy(self._tables)
        indexes = copy.deepcopy(self._indexes)
        try:
            yield self
        except Exception:
            self._tables = tables
            self._indexes = indexes
            raise

    def apply(self, statement: dict) -> None:
        op = statement.get("op")
        handler = getattr(self, f"_apply_{op}", None)
        if handler is None:
            raise SchemaCatalogError(f"Unsupported statement op: {op}")
        handler(statement)
        logger.info("catalog_statement_applied op=%s table=%s", op, statement.get("table"))

    def apply_all(self, statements: List[dict]) -> None:
        for statement in statements:
            self.apply(statement)

    def _table(self, table: str) -> dict:
        table_def = self._tables.get(table)
        if table_def is None:
            raise SchemaCatalogError(f'relation "{table}" does not exist')
        return table_def

    def _column_names(self, table_def: dict) -> List[str]:
        return [col["name"] for col in table_def["columns"]]

    def _apply_create_table(self, statement: dict) -> None:
        table = statement["table"]
        if table in self._tables:
            raise SchemaCatalogError(f'relation "{table}" already exists')
        self._tables[table] = {"columns": copy.deepcopy(statement["columns"]), "rows": {}}

    def _apply_create_index(self, statement: dict) -> None:
        table_def = self._table(statement["table"])
        index = statement["index"]
        if statement["column"] not in self._column_names(table_def):
            raise SchemaCatalogError(f'column "{statement["column"]}" does not exist')
        if index in self._indexes:
            raise SchemaCatalogError(f'relation "{index}" already exists')
        self._indexes[index] = {"table": statement["table"], "column": statement["column"]}

    def _apply_drop_index(self, statement: dict) -> None:
        self._indexes.pop(statement["index"], None)

    def _apply_add_column(self, statement: dict) -> None:
        table = statement["table"]
        table_def = self._table(table)
        column = copy.deepcopy(statement["column"])
        name = column["name"]
        if name in self._column_names(table_def):
            raise SchemaCatalogError(f'column "{name}" of relation "{table}" already exists')
        if column.get("not_null") and column.get("default") is None and table_def["rows"]:
            raise SchemaCatalogError(f'column "{name}" of relation "{table}" contains null values', code="CONSTRAINT_VIOLATION")
        table_def["columns"].append(column)
        for row in table_def["rows"].values():
            row[name] = None

    def _apply_drop_column(self, statement: dict) -> None:
        table = statement["table"]
        table_def = self._table(table)
        name = statement["column"]
        if name not in self._column_names(table_def):
            raise SchemaCatalogError(f'column "{name}" of relation "{table}" does not exist')
        table_def["columns"] = [col for col in table_def["columns"] if col["name"] != name]
        for row in table_def["rows"].values():
            row.pop(name, None)
        for index, meta in list(self._indexes.items()):
            if meta["table"] == table and meta["column"] == name:
                del self._indexes[index]

    def _column(self, table: str, name: str) -> dict:
        for col in self._table(table)["columns"]:
            if col["name"] == name:
                return col
        raise SchemaCatalogError(f'column "{name}" of relation "{table}" does not exist')

    def _apply_set_not_null(self, statement: dict) -> None:
        table = statement["table"]
        name = statement["column"]
        column = self._column(table, name)
        if any(row.get(name) is None for row in self.rows(table).values()):
            raise SchemaCatalogError(f'column "{name}" of relation "{table}" contains null values', code="CONSTRAINT_VIOLATION")
        column["not_null"] = True

    def _apply_drop_not_null(self, statement: dict) -> None:
        self._column(statement["table"], statement["column"])["not_null"] = False

    def has_table(self, table: str) -> bool:
        return table in self._tables

    def describe(self, table: str) -> dict | None:
        table_def = self._tables.get(table)
        if table_def is None:
            return None
        return {
            "table": table,
            "columns": [
                {"name": col["name"], "type": col["type"], "not_null": bool(col.get("not_null"))}
                for col in table_def["columns"]
            ],
            "indexes": sorted(name for name, meta in self._indexes.items() if meta["table"] == table),
        }

    def columns(self, table: str) -> List[dict]:
        return copy.deepcopy(self._table(table)["columns"])

    def rows(self, table: str) -> Dict[str, dict]:
        return self._table(table)["rows"]


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def _sort_value(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True)
    return value


class MemoryInstanceStore:
    """Executes list/get/insert/update/delete plans against catalog rows."""

    def __init__(self, catalog: MemorySchemaCatalog) -> None:
        self._catalog = catalog

    def _check_columns(self, table: str, values: dict) -> List[dict]:
        columns = self._catalog.columns(table)
        names = {col["name"] for col in columns}
        for key in values:
            if key not in names:
                raise SchemaCatalogError(f'column "{key}" of relation "{table}" does not exist')
        return columns

    def _check_not_null(self, table: str, columns: List[dict], row: dict) -> None:
        for col in columns:
            if col.get("not_null") and row.get(col["name"]) is None:
                message = f'null value in column "{col["name"]}" of relation "{table}" violates not-null constraint'
                raise ValidationFailedError(
                    message,
                    errors=[{"code": "CONSTRAINT_VIOLATION", "message": message, "path": col["name"], "detail": {"table": table}}],
                )

    def list_page(self, plan: dict) -> Tuple[List[dict], int]:
        rows = list(enumerate(self._catalog.rows(plan["table"]).values()))
        search = plan.get("search") or {}
        term = (search.get("term") or "").lower()
        search_columns = search.get("columns") or []
        if term and search_columns:
            rows = [
                item
                for item in rows
                if any(term in (_text(item[1].get(col)) or "").lower() for col in search_columns if item[1].get(col) is not None)
            ]
        for column, value in plan.get("filters") or []:
            rows = [item for item in rows if item[1].get(column) == value]

        order = plan.get("order_by") or {"column": "created_at", "direction": "desc"}
        column = order["column"]
        descending = str(order.get("direction")).lower() == "desc"
        present = [item for item in rows if item[1].get(column) is not None]
        nulls = [item for item in rows if item[1].get(column) is None]
        present.sort(key=lambda item: (_sort_value(item[1][column]), item[0]), reverse=descending)
        # Postgres default: NULLS LAST for ASC, NULLS FIRST for DESC
        ordered = nulls + present if descending else present + nulls

        total = len(ordered)
        offset = plan.get("offset") or 0
        page = ordered[offset : offset + plan["limit"]]
        return [copy.deepcopy(row) for _, row in page], total

    def get(self, table: str, instance_id: str) -> dict | None:
        row = self._catalog.rows(table).get(str(instance_id))
        return copy.deepcopy(row) if row else None

    def insert(self, table: str, values: dict) -> dict:
        columns = self._check_columns(table, values)
        now = _now()
        row = {col["name"]: None for col in columns}
        row.update({"id": str(uuid.uuid4()), "created_at": now, "updated_at": now})
        row.update(copy.deepcopy(values))
        self._check_not_null(table, columns, row)
        self._catalog.rows(table)[row["id"]] = row
        return copy.deepcopy(row)

    def update(self, table: str, instance_id: str, values: dict) -> dict | None:
        columns = self._check_columns(table, values)
        rows = self._catalog.rows(table)
        existing = rows.get(str(instance_id))
        if existing is None:
            return None
        row = copy.deepcopy(existing)
        row.update(copy.deepcopy(values))
        row["updated_at"] = _now()
        self._check_not_null(table, columns, row)
        rows[row["id"]] = row
        return copy.deepcopy(row)

    def delete(self, table: str, instance_id: str) -> bool:
        return self._catalog.rows(table).pop(str(instance_id), None) is not None
