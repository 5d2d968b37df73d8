"""Postgres-backed registries and instance store.

Registry mutations that change physical schema run their metadata writes and
DDL on one connection inside one transaction; Postgres DDL is transactional,
so a failing statement rolls both back together.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, List

import psycopg2
import psycopg2.errors
import psycopg2.extras

from metaschema.definitions import (
    default_display_properties,
    field_names,
    migration_required,
    normalize_field,
    prepare_object,
    prepare_object_update,
    require_fields,
    resolve_references,
    sort_references,
)
from metaschema.errors import DuplicateKeyError, ReferentialIntegrityError, ValidationFailedError, schema_change_error
from metaschema.naming import table_name
from metaschema.query_builder import compile_delete, compile_get, compile_insert, compile_list, compile_update
from metaschema.statement_hash import statements_hash
from metaschema.table_generator import TableGenerator

from app.db import clear_active_conn, execute, fetch_all, fetch_one, get_conn, get_pool, set_active_conn


logger = logging.getLogger("metaschema.registry")

_METADATA_SCHEMA = (
    (
        "field_definitions",
        """
        create table if not exists field_definitions (
          id uuid primary key default gen_random_uuid(),
          short_name varchar(63) not null unique,
          display_name text not null,
          description text not null default '',
          datatype varchar(32) not null,
          datatype_properties jsonb not null default '{}'::jsonb,
          validation_rules jsonb not null default '[]'::jsonb,
          mandatory boolean not null default false,
          created_at timestamptz not null default now(),
          updated_at timestamptz not null default now()
        )
        """,
    ),
    (
        "object_definitions",
        """
        create table if not exists object_definitions (
          id uuid primary key default gen_random_uuid(),
          short_name varchar(63) not null unique,
          display_name text not null,
          description text not null default '',
          display_properties jsonb not null default '{}'::jsonb,
          field_groups jsonb,
          wizard_config jsonb,
          created_at timestamptz not null default now(),
          updated_at timestamptz not null default now()
        )
        """,
    ),
    (
        "object_fields",
        """
        create table if not exists object_fields (
          object_id uuid not null references object_definitions(id) on delete cascade,
          field_short_name varchar(63) not null,
          mandatory boolean not null default false,
          display_order numeric not null default 0,
          primary key (object_id, field_short_name)
        )
        """,
    ),
    (
        "object_fields_field_idx",
        "create index if not exists object_fields_field_idx on object_fields (field_short_name)",
    ),
    (
        "object_schema_audit",
        """
        create table if not exists object_schema_audit (
          id uuid primary key default gen_random_uuid(),
          object_short_name varchar(63) not null,
          action varchar(16) not null,
          statements jsonb not null,
          statements_hash text not null,
          created_at timestamptz not null default now()
        )
        """,
    ),
)
_SCHEMA_READY = [False]


def ensure_metadata_schema() -> None:
    if _SCHEMA_READY[0]:
        return
    with get_conn() as conn:
        for name, ddl in _METADATA_SCHEMA:
            execute(conn, ddl, query_name=f"metadata_schema.{name}")
    _SCHEMA_READY[0] = True
    logger.info("metadata_schema_ready tables=%s", [name for name, _ in _METADATA_SCHEMA])


class _TxContext:
    def __init__(self, conn, pool):
        self.conn = conn
        self.pool = pool
        self.depth = 1
        self.failed = False


_TX_CONTEXT: ContextVar[_TxContext | None] = ContextVar("metaschema_tx", default=None)


class DbTx:
    def __init__(self, ctx: _TxContext):
        self._ctx = ctx

    @property
    def conn(self):
        return self._ctx.conn

    def _release(self) -> None:
        ctx = self._ctx
        ctx.pool.putconn(ctx.conn)
        _TX_CONTEXT.set(None)
        clear_active_conn()

    def commit(self) -> None:
        ctx = self._ctx
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        try:
            if ctx.failed:
                ctx.conn.rollback()
            else:
                ctx.conn.commit()
        finally:
            self._release()

    def rollback(self) -> None:
        ctx = self._ctx
        ctx.failed = True
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        try:
            ctx.conn.rollback()
        finally:
            self._release()


class DbTxManager:
    def begin(self) -> DbTx:
        ctx = _TX_CONTEXT.get()
        if ctx is not None:
            ctx.depth += 1
            return DbTx(ctx)
        pool = get_pool()
        conn = pool.getconn()
        ctx = _TxContext(conn, pool)
        _TX_CONTEXT.set(ctx)
        set_active_conn(conn)
        return DbTx(ctx)

    @contextmanager
    def transaction(self):
        """Commit when the block exits cleanly, roll back on any exception."""
        tx = self.begin()
        try:
            yield tx
        except Exception:
            tx.rollback()
            raise
        tx.commit()


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _to_iso(value):
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value


def _json(value):
    return psycopg2.extras.Json(value) if value is not None else None


_FIELD_COLUMNS = (
    "id, short_name, display_name, description, datatype, datatype_properties, "
    "validation_rules, mandatory, created_at, updated_at"
)


def _field_from_row(row: dict) -> dict:
    return {
        "id": str(row["id"]),
        "short_name": row["short_name"],
        "display_name": row["display_name"],
        "description": row.get("description") or "",
        "datatype": row["datatype"],
        "datatype_properties": _ensure_json(row.get("datatype_properties")) or {},
        "validation_rules": _ensure_json(row.get("validation_rules")) or [],
        "mandatory": bool(row.get("mandatory")),
        "created_at": _to_iso(row.get("created_at")),
        "updated_at": _to_iso(row.get("updated_at")),
    }


def _unique_violation(exc: Exception) -> bool:
    return isinstance(exc, psycopg2.errors.UniqueViolation)


class DbFieldRegistry:
    def register_field(self, field: dict) -> dict:
        record = normalize_field(field)
        short_name = record["short_name"]
        try:
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    f"""
                    insert into field_definitions
                      (short_name, display_name, description, datatype, datatype_properties, validation_rules, mandatory)
                    values (%s,%s,%s,%s,%s,%s,%s)
                    returning {_FIELD_COLUMNS}
                    """,
                    [
                        short_name,
                        record["display_name"],
                        record["description"],
                        record["datatype"],
                        _json(record["datatype_properties"]),
                        _json(record["validation_rules"]),
                        record["mandatory"],
                    ],
                    query_name="field_definitions.insert",
                )
        except psycopg2.IntegrityError as exc:
            if not _unique_violation(exc):
                raise
            raise DuplicateKeyError(
                f"Field with short name '{short_name}' already exists",
                path="short_name",
                detail={"short_name": short_name},
            ) from exc
        logger.info("field_registered short_name=%s datatype=%s", short_name, record["datatype"])
        return _field_from_row(row)

    def get_field_by_short_name(self, short_name: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"select {_FIELD_COLUMNS} from field_definitions where short_name=%s",
                [short_name],
                query_name="field_definitions.get",
            )
        return _field_from_row(row) if row else None

    def get_all_fields(self) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select {_FIELD_COLUMNS} from field_definitions order by created_at desc, short_name",
                query_name="field_definitions.list",
            )
        return [_field_from_row(r) for r in rows]

    def get_fields_by_short_names(self, short_names: List[str], lock: bool = False) -> list[dict]:
        if not short_names:
            return []
        sql = f"select {_FIELD_COLUMNS} from field_definitions where short_name = any(%s)"
        if lock:
            # blocks a concurrent delete_field until the caller's transaction ends
            sql += " for share"
        with get_conn() as conn:
            rows = fetch_all(conn, sql, [list(short_names)], query_name="field_definitions.get_many")
        by_name = {row["short_name"]: _field_from_row(row) for row in rows}
        return [by_name[name] for name in short_names if name in by_name]

    def _referencing_objects(self, conn, short_name: str) -> list[str]:
        rows = fetch_all(
            conn,
            """
            select o.short_name
            from object_fields f
            join object_definitions o on o.id = f.object_id
            where f.field_short_name=%s
            order by o.short_name
            """,
            [short_name],
            query_name="object_fields.referencing",
        )
        return [r["short_name"] for r in rows]

    def update_field(self, short_name: str, changes: dict) -> dict | None:
        existing = self.get_field_by_short_name(short_name)
        if existing is None:
            return None
        patch = normalize_field(changes, partial=True)
        if patch.get("short_name", short_name) != short_name:
            raise ValidationFailedError(
                "Short name cannot be changed",
                errors=[{"code": "SHORT_NAME_IMMUTABLE", "message": "Short name cannot be changed", "path": "short_name", "detail": None}],
            )
        patch.pop("short_name", None)
        merged = {**existing, **patch}
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                update field_definitions
                set display_name=%s, description=%s, datatype=%s, datatype_properties=%s,
                    validation_rules=%s, mandatory=%s, updated_at=now()
                where short_name=%s
                returning {_FIELD_COLUMNS}
                """,
                [
                    merged["display_name"],
                    merged["description"],
                    merged["datatype"],
                    _json(merged["datatype_properties"]),
                    _json(merged["validation_rules"]),
                    merged["mandatory"],
                    short_name,
                ],
                query_name="field_definitions.update",
            )
            if row and merged["datatype"] != existing["datatype"]:
                referenced_by = self._referencing_objects(conn, short_name)
                if referenced_by:
                    logger.warning(
                        "field_datatype_changed short_name=%s from=%s to=%s referenced_by=%s columns_unchanged=true",
                        short_name,
                        existing["datatype"],
                        merged["datatype"],
                        referenced_by,
                    )
        if not row:
            return None
        logger.info("field_updated short_name=%s keys=%s", short_name, sorted(patch.keys()))
        return _field_from_row(row)

    def delete_field(self, short_name: str) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select id from field_definitions where short_name=%s for update",
                [short_name],
                query_name="field_definitions.lock",
            )
            if not row:
                return False
            referenced_by = self._referencing_objects(conn, short_name)
            if referenced_by:
                raise ReferentialIntegrityError(
                    f"Field '{short_name}' is used by objects: {', '.join(referenced_by)}",
                    path="short_name",
                    detail={"objects": referenced_by},
                )
            execute(conn, "delete from field_definitions where short_name=%s", [short_name], query_name="field_definitions.delete")
        logger.info("field_deleted short_name=%s", short_name)
        return True


_OBJECT_SELECT = """
    select o.id, o.short_name, o.display_name, o.description, o.display_properties,
           o.field_groups, o.wizard_config, o.created_at, o.updated_at,
           coalesce(
             (select json_agg(
                       json_build_object(
                         'field_short_name', f.field_short_name,
                         'mandatory', f.mandatory,
                         'order', f.display_order
                       )
                       order by f.display_order, f.field_short_name
                     )
              from object_fields f where f.object_id = o.id),
             '[]'::json
           ) as fields
    from object_definitions o
"""


def _object_from_row(row: dict) -> dict:
    return {
        "id": str(row["id"]),
        "short_name": row["short_name"],
        "display_name": row["display_name"],
        "description": row.get("description") or "",
        "fields": sort_references(_ensure_json(row.get("fields")) or []),
        "display_properties": _ensure_json(row.get("display_properties")) or default_display_properties(),
        "field_groups": _ensure_json(row.get("field_groups")),
        "wizard_config": _ensure_json(row.get("wizard_config")),
        "created_at": _to_iso(row.get("created_at")),
        "updated_at": _to_iso(row.get("updated_at")),
    }


_PG_TYPES = {
    "text": "TEXT",
    "numeric": "NUMERIC",
    "boolean": "BOOLEAN",
    "date": "DATE",
    "time without time zone": "TIME",
    "timestamp without time zone": "TIMESTAMP",
    "uuid": "UUID",
    "jsonb": "JSONB",
}


def _column_type(row: dict) -> str:
    if row["data_type"] == "character varying":
        return f"VARCHAR({row['character_maximum_length']})"
    return _PG_TYPES.get(row["data_type"], row["data_type"].upper())


class DbObjectRegistry:
    def __init__(self, field_registry: DbFieldRegistry, table_generator: TableGenerator, tx_manager: DbTxManager) -> None:
        self._fields = field_registry
        self._generator = table_generator
        self._tx = tx_manager

    def _load(self, conn, short_name: str) -> dict | None:
        row = fetch_one(conn, _OBJECT_SELECT + " where o.short_name=%s", [short_name], query_name="object_definitions.get")
        return _object_from_row(row) if row else None

    def _resolve_fields(self, names: List[str]) -> list[dict]:
        fields = self._fields.get_fields_by_short_names(names, lock=True)
        require_fields(names, fields)
        return fields

    def _insert_references(self, conn, object_id: str, refs: List[dict]) -> None:
        for ref in refs:
            execute(
                conn,
                """
                insert into object_fields (object_id, field_short_name, mandatory, display_order)
                values (%s,%s,%s,%s)
                """,
                [object_id, ref["field_short_name"], ref["mandatory"], ref["order"]],
                query_name="object_fields.insert",
            )

    def _apply(self, conn, statements: List[dict]) -> None:
        for stmt in statements:
            try:
                execute(conn, stmt["sql"], query_name=f"ddl.{stmt['op']}")
            except psycopg2.Error as exc:
                code = "CONSTRAINT_VIOLATION" if isinstance(exc, psycopg2.IntegrityError) else "DDL_FAILED"
                diag = getattr(exc, "diag", None)
                message = (getattr(diag, "message_primary", None) if diag else None) or str(exc).strip()
                logger.warning("ddl_failed op=%s table=%s code=%s", stmt["op"], stmt["table"], code)
                raise schema_change_error(message, stmt, code) from exc

    def _insert_audit(self, conn, short_name: str, action: str, statements: List[dict]) -> None:
        execute(
            conn,
            """
            insert into object_schema_audit (object_short_name, action, statements, statements_hash)
            values (%s,%s,%s,%s)
            """,
            [short_name, action, _json([stmt["sql"] for stmt in statements]), statements_hash(statements)],
            query_name="object_schema_audit.insert",
        )

    def get_object_by_short_name(self, short_name: str) -> dict | None:
        with get_conn() as conn:
            return self._load(conn, short_name)

    def get_all_objects(self) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                _OBJECT_SELECT + " order by o.created_at desc, o.short_name",
                query_name="object_definitions.list",
            )
        return [_object_from_row(r) for r in rows]

    def register_object(self, payload: dict) -> dict:
        definition = prepare_object(payload)
        short_name = definition["short_name"]
        table = table_name(short_name)
        try:
            with self._tx.transaction():
                with get_conn() as conn:
                    row = fetch_one(
                        conn,
                        """
                        insert into object_definitions
                          (short_name, display_name, description, display_properties, field_groups, wizard_config)
                        values (%s,%s,%s,%s,%s,%s)
                        returning id
                        """,
                        [
                            short_name,
                            definition["display_name"],
                            definition["description"],
                            _json(definition["display_properties"]),
                            _json(definition.get("field_groups")),
                            _json(definition.get("wizard_config")),
                        ],
                        query_name="object_definitions.insert",
                    )
                    fields = self._resolve_fields(field_names(definition))
                    refs = resolve_references(definition["fields"], fields)
                    self._insert_references(conn, str(row["id"]), refs)
                    present = fetch_one(conn, "select to_regclass(%s) is not null as present", [table], query_name="catalog.table_exists")
                    if present and present["present"]:
                        raise DuplicateKeyError(f"Table '{table}' already exists", path="short_name", detail={"table": table})
                    statements = self._generator.full_create({**definition, "fields": refs}, fields)
                    self._apply(conn, statements)
                    self._insert_audit(conn, short_name, "register", statements)
                    record = self._load(conn, short_name)
        except psycopg2.IntegrityError as exc:
            if not _unique_violation(exc):
                raise
            raise DuplicateKeyError(
                f"Object with short name '{short_name}' already exists",
                path="short_name",
                detail={"short_name": short_name},
            ) from exc
        logger.info("object_registered short_name=%s table=%s statements=%s", short_name, table, len(statements))
        return record

    def _plan_update(self, existing: dict, changes: dict, lock: bool) -> dict:
        patch, merged = prepare_object_update(existing, changes)
        new_fields = None
        if "fields" in patch:
            names = field_names(merged)
            new_fields = self._fields.get_fields_by_short_names(names, lock=lock)
            require_fields(names, new_fields)
            merged["fields"] = resolve_references(merged["fields"], new_fields)
        statements: List[dict] = []
        if migration_required(patch):
            old_fields = self._fields.get_fields_by_short_names(field_names(existing))
            if new_fields is None:
                new_fields = old_fields
            statements = self._generator.migration(existing, old_fields, merged, new_fields)
        return {"patch": patch, "merged": merged, "statements": statements}

    def preview_update(self, short_name: str, changes: dict) -> dict | None:
        existing = self.get_object_by_short_name(short_name)
        if existing is None:
            return None
        plan = self._plan_update(existing, changes, lock=False)
        return {
            "short_name": short_name,
            "statements": plan["statements"],
            "statements_hash": statements_hash(plan["statements"]),
        }

    def update_object(self, short_name: str, changes: dict) -> dict | None:
        with self._tx.transaction():
            with get_conn() as conn:
                locked = fetch_one(
                    conn,
                    "select id from object_definitions where short_name=%s for update",
                    [short_name],
                    query_name="object_definitions.lock",
                )
                if not locked:
                    return None
                existing = self._load(conn, short_name)
                plan = self._plan_update(existing, changes, lock=True)
                merged = plan["merged"]
                execute(
                    conn,
                    """
                    update object_definitions
                    set display_name=%s, description=%s, display_properties=%s,
                        field_groups=%s, wizard_config=%s, updated_at=now()
                    where id=%s
                    """,
                    [
                        merged["display_name"],
                        merged["description"],
                        _json(merged["display_properties"]),
                        _json(merged.get("field_groups")),
                        _json(merged.get("wizard_config")),
                        locked["id"],
                    ],
                    query_name="object_definitions.update",
                )
                if "fields" in plan["patch"]:
                    execute(conn, "delete from object_fields where object_id=%s", [locked["id"]], query_name="object_fields.clear")
                    self._insert_references(conn, str(locked["id"]), merged["fields"])
                self._apply(conn, plan["statements"])
                self._insert_audit(conn, short_name, "update", plan["statements"])
                record = self._load(conn, short_name)
        logger.info(
            "object_updated short_name=%s keys=%s statements=%s",
            short_name,
            sorted(plan["patch"].keys()),
            len(plan["statements"]),
        )
        return record

    def delete_object(self, short_name: str) -> bool:
        with self._tx.transaction():
            with get_conn() as conn:
                deleted = execute(
                    conn,
                    "delete from object_definitions where short_name=%s",
                    [short_name],
                    query_name="object_definitions.delete",
                )
                if deleted:
                    self._insert_audit(conn, short_name, "delete", [])
        if deleted:
            logger.warning("object_deleted short_name=%s table_retained=%s", short_name, table_name(short_name))
        return bool(deleted)

    def schema_history(self, short_name: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select id, object_short_name, action, statements, statements_hash, created_at
                from object_schema_audit
                where object_short_name=%s
                order by created_at desc, id
                """,
                [short_name],
                query_name="object_schema_audit.history",
            )
        return [
            {
                "audit_id": str(r["id"]),
                "object_short_name": r["object_short_name"],
                "action": r["action"],
                "statements": _ensure_json(r["statements"]) or [],
                "statements_hash": r["statements_hash"],
                "at": _to_iso(r["created_at"]),
            }
            for r in rows
        ]

    def describe_storage(self, short_name: str) -> dict | None:
        table = table_name(short_name)
        with get_conn() as conn:
            columns = fetch_all(
                conn,
                """
                select column_name, data_type, is_nullable, character_maximum_length
                from information_schema.columns
                where table_schema = current_schema() and table_name=%s
                order by ordinal_position
                """,
                [table],
                query_name="catalog.columns",
            )
            if not columns:
                return None
            indexes = fetch_all(
                conn,
                """
                select i.relname as index_name
                from pg_index x
                join pg_class i on i.oid = x.indexrelid
                join pg_class t on t.oid = x.indrelid
                join pg_namespace n on n.oid = t.relnamespace
                where t.relname=%s and n.nspname = current_schema() and not x.indisprimary
                order by i.relname
                """,
                [table],
                query_name="catalog.indexes",
            )
        return {
            "table": table,
            "columns": [
                {"name": c["column_name"], "type": _column_type(c), "not_null": c["is_nullable"] == "NO"}
                for c in columns
            ],
            "indexes": [r["index_name"] for r in indexes],
        }


def _adapt(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return psycopg2.extras.Json(value)
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, datetime):
        return _to_iso(value)
    if isinstance(value, (date, time)):
        return value.isoformat()
    return value


def _row_out(row: dict) -> dict:
    return {key: _plain(value) for key, value in row.items()}


def _constraint_error(exc: psycopg2.IntegrityError, table: str) -> ValidationFailedError:
    diag = getattr(exc, "diag", None)
    column = getattr(diag, "column_name", None) if diag else None
    message = getattr(diag, "message_primary", None) or "Database constraint violation"
    return ValidationFailedError(
        message,
        errors=[{"code": "CONSTRAINT_VIOLATION", "message": message, "path": column, "detail": {"table": table}}],
    )


class DbInstanceStore:
    def list_page(self, plan: dict) -> tuple[list[dict], int]:
        compiled = compile_list(plan)
        with get_conn() as conn:
            total = fetch_one(
                conn,
                compiled["count_sql"],
                [_adapt(p) for p in compiled["count_params"]],
                query_name="instances.count",
            )
            rows = fetch_all(
                conn,
                compiled["data_sql"],
                [_adapt(p) for p in compiled["data_params"]],
                query_name="instances.list",
            )
        return [_row_out(r) for r in rows], int(total["total"]) if total else 0

    def get(self, table: str, instance_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, compile_get(table), [instance_id], query_name="instances.get")
        return _row_out(row) if row else None

    def insert(self, table: str, values: dict) -> dict:
        columns = list(values.keys())
        try:
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    compile_insert(table, columns),
                    [_adapt(values[col]) for col in columns],
                    query_name="instances.insert",
                )
        except psycopg2.IntegrityError as exc:
            raise _constraint_error(exc, table) from exc
        return _row_out(row)

    def update(self, table: str, instance_id: str, values: dict) -> dict | None:
        columns = list(values.keys())
        try:
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    compile_update(table, columns),
                    [_adapt(values[col]) for col in columns] + [instance_id],
                    query_name="instances.update",
                )
        except psycopg2.IntegrityError as exc:
            raise _constraint_error(exc, table) from exc
        return _row_out(row) if row else None

    def delete(self, table: str, instance_id: str) -> bool:
        with get_conn() as conn:
            deleted = execute(conn, compile_delete(table), [instance_id], query_name="instances.delete")
        return deleted > 0
