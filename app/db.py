"""Postgres connection pool and timed query helpers."""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool


_POOL: ThreadedConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_logger = logging.getLogger("plank.db")
_query_logger = logging.getLogger("plank.db.query")

_PARAM_PREVIEW = 80


def get_db_url() -> str:
    url = os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("SUPABASE_DB_URL or DATABASE_URL is required when USE_DB=1")
    return url


def _slow_ms() -> float:
    return float(os.getenv("PLANK_QUERY_SLOW_MS", "200"))


def _log_all() -> bool:
    return os.getenv("PLANK_QUERY_LOG", "").strip() == "1"


def _preview(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<bytes:{len(value)}>"
    if isinstance(value, str) and len(value) > _PARAM_PREVIEW:
        return f"{value[:40]}...({len(value)} chars)"
    if isinstance(value, list) and len(value) > 10:
        return f"<list:{len(value)}>"
    return value


@contextmanager
def _timed(query_name: str | None, params: Iterable[Any] | None) -> Iterator[dict]:
    """Time one statement; the caller fills `stats["rowcount"]`."""
    stats: dict = {"rowcount": None}
    start = time.perf_counter()
    yield stats
    elapsed_ms = (time.perf_counter() - start) * 1000
    slow = elapsed_ms >= _slow_ms()
    if not slow and not _log_all():
        return
    params_out = None if params is None else [_preview(p) for p in params]
    if slow:
        _query_logger.warning("db_slow_query name=%s ms=%.2f rows=%s params=%s", query_name or "unnamed", elapsed_ms, stats["rowcount"], params_out)
    else:
        _query_logger.info("db_query name=%s ms=%.2f rows=%s", query_name or "unnamed", elapsed_ms, stats["rowcount"])


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            return
        low = minconn if minconn is not None else int(os.getenv("PLANK_DB_POOL_MIN", "1"))
        high = maxconn if maxconn is not None else int(os.getenv("PLANK_DB_POOL_MAX", "10"))
        _POOL = ThreadedConnectionPool(low, high, dsn=get_db_url())
        _logger.info("db_pool_ready min=%s max=%s", low, high)


def close_pool() -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            return
        _POOL.closeall()
        _POOL = None
        _logger.info("db_pool_closed")


@contextmanager
def get_conn():
    """Borrow a pooled connection as one transaction."""
    if _POOL is None:
        init_pool()
    pool = _POOL
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    with _timed(query_name, params) as stats:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, list(params or []))
            rows = [dict(r) for r in cur.fetchall()] if cur.description else []
            stats["rowcount"] = cur.rowcount
    return rows


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    with _timed(query_name, params) as stats:
        with conn.cursor() as cur:
            cur.execute(sql, list(params or []))
            stats["rowcount"] = cur.rowcount
    return stats["rowcount"]
