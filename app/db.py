"""Postgres connection pool and query helpers."""

from __future__ import annotations

import contextvars
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import SimpleConnectionPool


def get_db_url() -> str:
    url = os.getenv("METASCHEMA_DB_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("METASCHEMA_DB_URL or DATABASE_URL is required when USE_DB=1")
    return url


_POOL: SimpleConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_logger = logging.getLogger("metaschema.db")
_query_logger = logging.getLogger("metaschema.db.query")
_ACTIVE_CONN: contextvars.ContextVar[Any | None] = contextvars.ContextVar("metaschema_db_active_conn", default=None)
_DB_STATS: contextvars.ContextVar[dict | None] = contextvars.ContextVar("metaschema_db_stats", default=None)
_SLOW_MS = float(os.getenv("METASCHEMA_QUERY_SLOW_MS", "200"))
_LOG_ALL = os.getenv("METASCHEMA_QUERY_LOG", "").strip() == "1"


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray)):
            redacted.append(f"<bytes:{len(val)}>")
        elif isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}...{val[-10:]}")
        elif isinstance(val, psycopg2.extras.Json):
            redacted.append("<json>")
        else:
            redacted.append(val)
    return redacted


def _log_query(query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int | None) -> None:
    if not query_name and not _LOG_ALL and elapsed_ms < _SLOW_MS:
        return
    message = {
        "query": query_name or "unnamed",
        "ms": round(elapsed_ms, 2),
        "rowcount": rowcount,
        "params": _redact_params(params),
    }
    if elapsed_ms >= _SLOW_MS:
        _query_logger.warning("db_slow_query=%s", message)
    else:
        _query_logger.info("db_query=%s", message)


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            if minconn is None:
                minconn = int(os.getenv("METASCHEMA_DB_POOL_MIN", "1"))
            if maxconn is None:
                maxconn = int(os.getenv("METASCHEMA_DB_POOL_MAX", "10"))
            _POOL = SimpleConnectionPool(minconn, maxconn, dsn=get_db_url())
            _logger.info("db_pool_ready min=%s max=%s", minconn, maxconn)


def get_pool() -> SimpleConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


def _empty_stats() -> dict:
    return {"queries": 0, "total_ms": 0.0}


def reset_db_stats() -> None:
    _DB_STATS.set(_empty_stats())


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        return _empty_stats()
    return stats


def _add_db_ms(delta: float) -> None:
    stats = dict(get_db_stats())
    stats["total_ms"] = stats.get("total_ms", 0.0) + delta
    stats["queries"] = stats.get("queries", 0) + 1
    _DB_STATS.set(stats)


def set_active_conn(conn) -> None:
    _ACTIVE_CONN.set(conn)


def clear_active_conn() -> None:
    _ACTIVE_CONN.set(None)


def get_active_conn():
    return _ACTIVE_CONN.get()


@contextmanager
def get_conn():
    """Borrow a pooled connection, or reuse the one owned by an open transaction.

    A borrowed connection commits when the block exits cleanly and rolls back
    otherwise; a reused one is left for its transaction owner to finish.
    """
    active = get_active_conn()
    if active is not None:
        yield active
        return
    pool = get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def _timed(conn, sql: str, params: Iterable[Any] | None, query_name: str | None, cursor_factory, consume: Callable):
    start = time.perf_counter()
    with conn.cursor(cursor_factory=cursor_factory) as cur:
        cur.execute(sql, params)
        result = consume(cur)
        rowcount = cur.rowcount
    elapsed_ms = (time.perf_counter() - start) * 1000
    _add_db_ms(elapsed_ms)
    _log_query(query_name, params, elapsed_ms, rowcount)
    return result


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    def _consume(cur):
        row = cur.fetchone()
        return dict(row) if row else None

    return _timed(conn, sql, params, query_name, psycopg2.extras.RealDictCursor, _consume)


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    return _timed(
        conn,
        sql,
        params,
        query_name,
        psycopg2.extras.RealDictCursor,
        lambda cur: [dict(r) for r in cur.fetchall()],
    )


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    return _timed(conn, sql, params, query_name, None, lambda cur: cur.rowcount)
