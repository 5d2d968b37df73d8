"""Pure translation of object definitions into ordered DDL statements.

Each statement is a dict: ``op`` names the change, the remaining keys carry
the structured target (table, column, index) and ``sql`` holds the Postgres
text. The structured keys let non-SQL catalogs apply the same plan.
"""

from __future__ import annotations

from typing import Dict, List

from .definitions import sort_references
from .errors import NotFoundError, ValidationFailedError
from .naming import index_name, quote_ident, table_name


DATATYPE_SQL_TYPES: Dict[str, str] = {
    "text": "VARCHAR(255)",
    "text_area": "TEXT",
    "number": "NUMERIC",
    "boolean": "BOOLEAN",
    "date": "DATE",
    "time": "TIME",
    "datetime": "TIMESTAMP",
    "email": "VARCHAR(255)",
    "url": "VARCHAR(2048)",
    "single_select": "VARCHAR(100)",
    "multi_select": "JSONB",
    "document_upload": "JSONB",
}

PRIMARY_KEY_COLUMN = {"name": "id", "type": "UUID", "not_null": True, "primary_key": True, "default": "gen_random_uuid()"}
AUDIT_COLUMNS = (
    {"name": "created_at", "type": "TIMESTAMP", "not_null": False, "default": "CURRENT_TIMESTAMP"},
    {"name": "updated_at", "type": "TIMESTAMP", "not_null": False, "default": "CURRENT_TIMESTAMP"},
    {"name": "created_by", "type": "UUID", "not_null": False, "default": None},
    {"name": "updated_by", "type": "UUID", "not_null": False, "default": None},
)


def column_sql(column: dict) -> str:
    parts = [quote_ident(column["name"]), column["type"]]
    if column.get("primary_key"):
        parts.append("PRIMARY KEY")
    elif column.get("not_null"):
        parts.append("NOT NULL")
    if column.get("default"):
        parts.append(f"DEFAULT {column['default']}")
    return " ".join(parts)


class TableGenerator:
    """Builds full-create and forward-migration statement lists."""

    def sql_type(self, datatype: str) -> str:
        sql_type = DATATYPE_SQL_TYPES.get(datatype)
        if sql_type is None:
            raise ValidationFailedError(
                f"Unsupported datatype: {datatype}",
                errors=[{"code": "INVALID_DATATYPE", "message": f"Unsupported datatype: {datatype}", "path": "datatype", "detail": None}],
            )
        return sql_type

    def field_columns(self, object_def: dict, fields: List[dict]) -> List[dict]:
        by_name = {field["short_name"]: field for field in fields}
        columns: List[dict] = []
        seen: set[str] = set()
        for ref in sort_references(object_def.get("fields") or []):
            name = ref["field_short_name"]
            if name in seen:
                raise ValidationFailedError(
                    f"Field '{name}' is referenced more than once",
                    errors=[{"code": "DUPLICATE_FIELD_REFERENCE", "message": f"Field '{name}' is referenced more than once", "path": "fields", "detail": {"field": name}}],
                )
            seen.add(name)
            field = by_name.get(name)
            if field is None:
                raise NotFoundError(f"Field '{name}' does not exist", path="fields", detail={"field": name})
            columns.append(
                {
                    "name": name,
                    "type": self.sql_type(field.get("datatype")),
                    # object-level flag, not the field's own default
                    "not_null": bool(ref.get("mandatory")),
                    "default": None,
                }
            )
        return columns

    def _create_index(self, object_short_name: str, field_name: str) -> dict:
        table = table_name(object_short_name)
        index = index_name(object_short_name, field_name)
        return {
            "op": "create_index",
            "table": table,
            "index": index,
            "column": field_name,
            "sql": f"CREATE INDEX {quote_ident(index)} ON {quote_ident(table)} ({quote_ident(field_name)});",
        }

    def _drop_index(self, object_short_name: str, field_name: str) -> dict:
        index = index_name(object_short_name, field_name)
        return {
            "op": "drop_index",
            "table": table_name(object_short_name),
            "index": index,
            "column": field_name,
            "sql": f"DROP INDEX IF EXISTS {quote_ident(index)};",
        }

    def full_create(self, object_def: dict, fields: List[dict]) -> List[dict]:
        short_name = object_def["short_name"]
        table = table_name(short_name)
        columns = [dict(PRIMARY_KEY_COLUMN)] + self.field_columns(object_def, fields) + [dict(col) for col in AUDIT_COLUMNS]
        body = ",\n".join(f"  {column_sql(col)}" for col in columns)
        statements = [
            {
                "op": "create_table",
                "table": table,
                "columns": columns,
                "sql": f"CREATE TABLE {quote_ident(table)} (\n{body}\n);",
            }
        ]
        for field_name in (object_def.get("display_properties") or {}).get("searchable_fields") or []:
            statements.append(self._create_index(short_name, field_name))
        return statements

    def migration(self, old_object: dict, old_fields: List[dict], new_object: dict, new_fields: List[dict]) -> List[dict]:
        """Diff two (object, fields) pairs into a forward migration.

        Order: index drops, column drops, column adds, NOT NULL toggles, index
        creates. An index is never created before its column exists, and no
        statement touches a column after it has been dropped. A kept reference
        whose mandatory flag changed gets SET or DROP NOT NULL; a datatype
        change on an existing field emits nothing.
        """
        short_name = old_object["short_name"]
        table = table_name(short_name)
        old_refs = sort_references(old_object.get("fields") or [])
        old_names = [ref["field_short_name"] for ref in old_refs]
        old_mandatory = {ref["field_short_name"]: bool(ref.get("mandatory")) for ref in old_refs}
        new_columns = self.field_columns(new_object, new_fields)
        new_names = [col["name"] for col in new_columns]
        old_searchable = list((old_object.get("display_properties") or {}).get("searchable_fields") or [])
        new_searchable = list((new_object.get("display_properties") or {}).get("searchable_fields") or [])

        statements: List[dict] = []
        for field_name in old_searchable:
            if field_name not in new_searchable:
                statements.append(self._drop_index(short_name, field_name))
        for field_name in old_names:
            if field_name not in new_names:
                statements.append(
                    {
                        "op": "drop_column",
                        "table": table,
                        "column": field_name,
                        "sql": f"ALTER TABLE {quote_ident(table)} DROP COLUMN {quote_ident(field_name)};",
                    }
                )
        for column in new_columns:
            if column["name"] not in old_names:
                statements.append(
                    {
                        "op": "add_column",
                        "table": table,
                        "column": column,
                        "sql": f"ALTER TABLE {quote_ident(table)} ADD COLUMN {column_sql(column)};",
                    }
                )
        for column in new_columns:
            name = column["name"]
            if name in old_mandatory and column["not_null"] != old_mandatory[name]:
                action = "SET" if column["not_null"] else "DROP"
                statements.append(
                    {
                        "op": f"{action.lower()}_not_null",
                        "table": table,
                        "column": name,
                        "sql": f"ALTER TABLE {quote_ident(table)} ALTER COLUMN {quote_ident(name)} {action} NOT NULL;",
                    }
                )
        for field_name in new_searchable:
            if field_name not in old_searchable:
                statements.append(self._create_index(short_name, field_name))
        return statements
