"""
db.py

PostgreSQL (psycopg2) access for the catalog with a process-global pool.

Pooling
-------
Catalog calls run on worker threads (``asyncio.to_thread``), so the pool is a
``ThreadedConnectionPool``. Connections go back to the pool with any open
transaction rolled back.

Helpers
-------
*_conn variants run on a caller-held connection so one transaction can span
several statements (read-existing + upsert + commit per catalog row). The
pooled variants check out a connection, run one statement and commit.
"""

from __future__ import annotations

import atexit
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence, Tuple

from apps.backend.db_metrics import measure_query
from infra.config import get_settings
from infra.logging_config import StructuredLogger

log = StructuredLogger(__name__)


def _db_url() -> str:
    url = get_settings().db.url
    if not url:
        raise RuntimeError("DATABASE_URL is not set")
    return url


# Keep a single global pool per process.
_POOL = None
_POOL_DSN: Optional[str] = None
_POOL_LOCK = threading.Lock()


def _get_pool():
    """Return the process-global pool, creating it on first use."""
    global _POOL, _POOL_DSN

    dsn = _db_url()
    with _POOL_LOCK:
        if _POOL is not None and _POOL_DSN == dsn:
            return _POOL

        from psycopg2.pool import ThreadedConnectionPool

        db_cfg = get_settings().db
        _POOL = ThreadedConnectionPool(
            minconn=1,
            maxconn=int(db_cfg.pool_maxconn),
            dsn=dsn,
            connect_timeout=int(db_cfg.connect_timeout),
        )
        _POOL_DSN = dsn
        return _POOL


def _close_pool() -> None:
    """Close the pool on process exit."""
    global _POOL
    try:
        if _POOL is not None:
            _POOL.closeall()
    except Exception as exc:
        log.debug("db_pool_close_failed", error=str(exc))
    finally:
        _POOL = None


atexit.register(_close_pool)


@contextmanager
def db_conn() -> Iterator[Any]:
    """Yield a pooled psycopg2 connection.

    Callers must not close the connection. Any open transaction is rolled
    back before the connection returns to the pool; a connection the pool
    refuses is closed.
    """
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
    finally:
        try:
            conn.rollback()
        except Exception as exc:
            log.debug("db_rollback_before_putconn_failed", error=str(exc))
        try:
            pool.putconn(conn)
        except Exception:
            try:
                conn.close()
            except Exception as exc:
                log.debug("db_rejected_connection_close_failed", error=str(exc))


def _rollback_quietly(conn: Any) -> None:
    try:
        conn.rollback()
    except Exception as exc:
        log.debug("db_rollback_failed", error=str(exc))


# ---------------------------
# Low-level *_conn primitives
# ---------------------------

def _query_name(sql: str, *, operation: str) -> str:
    """Return a stable query operation label for metrics/logging."""
    text = " ".join(str(sql or "").strip().split())
    if not text:
        return operation
    first_token = text.split(" ", 1)[0].lower()
    return f"{operation}:{first_token}"


def fetch_one_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Tuple[Any, ...]]:
    """Execute a query on an existing connection and return one row (or None)."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_one_conn")):
            cur.execute(sql, params or ())
        return cur.fetchone()


def fetch_all_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> list[Tuple[Any, ...]]:
    """Execute a query on an existing connection and return all rows."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_all_conn")):
            cur.execute(sql, params or ())
        return cur.fetchall()


def execute_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> int:
    """Execute a statement on an existing connection; returns the affected row count."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="execute_conn")):
            cur.execute(sql, params or ())
        return int(getattr(cur, "rowcount", 0) or 0)


def execute_many_conn(conn: Any, sql: str, seq_of_params: list[Sequence[Any]]) -> None:
    """Execute a statement against many parameter sets on an existing connection."""
    if not seq_of_params:
        return
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="execute_many_conn")):
            cur.executemany(sql, seq_of_params)


# ---------------------------
# Convenience helpers (pooled)
# ---------------------------

def fetch_one(sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Tuple[Any, ...]]:
    """Execute a query and return one row (or None)."""
    with db_conn() as conn:
        try:
            return fetch_one_conn(conn, sql, params)
        except Exception:
            _rollback_quietly(conn)
            raise


def fetch_all(sql: str, params: Optional[Sequence[Any]] = None) -> list[Tuple[Any, ...]]:
    """Execute a query and return all rows."""
    with db_conn() as conn:
        try:
            return fetch_all_conn(conn, sql, params)
        except Exception:
            _rollback_quietly(conn)
            raise


def execute(sql: str, params: Optional[Sequence[Any]] = None) -> int:
    """Execute a statement and commit; returns the affected row count."""
    with db_conn() as conn:
        try:
            count = execute_conn(conn, sql, params)
            conn.commit()
            return count
        except Exception:
            _rollback_quietly(conn)
            raise


def execute_many(sql: str, seq_of_params: list[Sequence[Any]]) -> None:
    """Execute a statement against many parameter sets and commit."""
    if not seq_of_params:
        return
    with db_conn() as conn:
        try:
            execute_many_conn(conn, sql, seq_of_params)
            conn.commit()
        except Exception:
            _rollback_quietly(conn)
            raise


# ---------------------------
# Dict row helpers
# ---------------------------

def _cols_from_description(desc: Any) -> list[str]:
    """Extract column names from cursor.description."""
    if not desc:
        return []
    cols: list[str] = []
    for i, d in enumerate(desc):
        try:
            name = d[0]
        except (IndexError, KeyError, TypeError):
            name = None
        cols.append(str(name) if name else f"col_{i}")
    return cols


def fetch_one_dict_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[dict[str, Any]]:
    """Execute a query and return one row as a dict (or None)."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_one_dict_conn")):
            cur.execute(sql, params or ())
        row = cur.fetchone()
        if row is None:
            return None
        cols = _cols_from_description(getattr(cur, "description", None))
        return dict(zip(cols, row, strict=False)) if cols else None


def fetch_all_dict_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> list[dict[str, Any]]:
    """Execute a query and return all rows as dicts."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_all_dict_conn")):
            cur.execute(sql, params or ())
        rows = cur.fetchall()
        cols = _cols_from_description(getattr(cur, "description", None))
        if not cols:
            return []
        return [dict(zip(cols, r, strict=False)) for r in rows]


def fetch_all_dict(sql: str, params: Optional[Sequence[Any]] = None) -> list[dict[str, Any]]:
    """Pooled variant of ``fetch_all_dict_conn``."""
    with db_conn() as conn:
        try:
            return fetch_all_dict_conn(conn, sql, params)
        except Exception:
            _rollback_quietly(conn)
            raise
