"""Parameterized DML for generated instance tables.

Identifiers come from registered metadata and pass :func:`quote_ident`;
every caller-supplied value is a bound ``%s`` parameter.
"""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

from .naming import quote_ident


def search_pattern(term: str) -> str:
    """Substring pattern with LIKE wildcards in ``term`` matched literally."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def build_where(plan: dict) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    search = plan.get("search") or {}
    columns = search.get("columns") or []
    if search.get("term") and columns:
        pattern = search_pattern(search["term"])
        parts = []
        for column in columns:
            parts.append(f"CAST({quote_ident(column)} AS TEXT) ILIKE %s")
            params.append(pattern)
        clauses.append("(" + " OR ".join(parts) + ")")
    for column, value in plan.get("filters") or []:
        if value is None:
            clauses.append(f"{quote_ident(column)} IS NULL")
        else:
            clauses.append(f"{quote_ident(column)} = %s")
            params.append(value)
    if not clauses:
        return "", params
    return "WHERE " + " AND ".join(clauses), params


def build_order_by(plan: dict) -> str:
    order = plan.get("order_by") or {"column": "created_at", "direction": "desc"}
    direction = "DESC" if str(order.get("direction")).lower() == "desc" else "ASC"
    return f"ORDER BY {quote_ident(order['column'])} {direction}"


def compile_list(plan: dict) -> Dict[str, Any]:
    """Compile a list plan into COUNT and page queries sharing one WHERE clause.

    ``plan`` keys: ``table``, ``search`` ({term, columns}), ``filters``
    (list of (column, value)), ``order_by`` ({column, direction}), ``limit``,
    ``offset``.
    """
    table = quote_ident(plan["table"])
    where, params = build_where(plan)
    where_sql = f" {where}" if where else ""
    count_sql = f"SELECT COUNT(*) AS total FROM {table}{where_sql}"
    data_sql = f"SELECT * FROM {table}{where_sql} {build_order_by(plan)} LIMIT %s OFFSET %s"
    return {
        "count_sql": count_sql,
        "count_params": list(params),
        "data_sql": data_sql,
        "data_params": list(params) + [plan["limit"], plan["offset"]],
    }


def compile_get(table: str) -> str:
    return f"SELECT * FROM {quote_ident(table)} WHERE \"id\" = %s"


def compile_insert(table: str, columns: List[str]) -> str:
    if not columns:
        return f"INSERT INTO {quote_ident(table)} DEFAULT VALUES RETURNING *"
    names = ", ".join(quote_ident(col) for col in columns)
    placeholders = ", ".join(["%s"] * len(columns))
    return f"INSERT INTO {quote_ident(table)} ({names}) VALUES ({placeholders}) RETURNING *"


def compile_update(table: str, columns: List[str]) -> str:
    assignments = [f"{quote_ident(col)} = %s" for col in columns]
    assignments.append('"updated_at" = CURRENT_TIMESTAMP')
    return f"UPDATE {quote_ident(table)} SET {', '.join(assignments)} WHERE \"id\" = %s RETURNING *"


def compile_delete(table: str) -> str:
    return f"DELETE FROM {quote_ident(table)} WHERE \"id\" = %s"
