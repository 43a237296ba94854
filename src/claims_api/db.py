import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool

logger = logging.getLogger(__name__)


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(
            f"Missing required environment variable '{name}'. "
            "Set it in the service environment or .env file."
        )
    return value


def _build_dsn() -> str:
    """
    Build DSN from the standardized database env vars.

    Uses:
      - POSTGRES_URL (optional full DSN; if provided, it wins)
      - POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_DB, POSTGRES_PORT, POSTGRES_HOST
    """
    url = os.getenv("POSTGRES_URL")
    if url:
        return url

    user = _required_env("POSTGRES_USER")
    password = _required_env("POSTGRES_PASSWORD")
    db = _required_env("POSTGRES_DB")
    port = _required_env("POSTGRES_PORT")
    host = os.getenv("POSTGRES_HOST", "localhost")
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


_POOL: Optional[ThreadedConnectionPool] = None


# PUBLIC_INTERFACE
def init_db_pool() -> None:
    """Initialize the global PostgreSQL connection pool."""
    global _POOL
    if _POOL is not None:
        return

    minconn = int(os.getenv("DB_POOL_MIN", "1"))
    maxconn = int(os.getenv("DB_POOL_MAX", "10"))
    _POOL = ThreadedConnectionPool(minconn=minconn, maxconn=maxconn, dsn=_build_dsn())
    logger.info("Database pool ready (min=%s, max=%s)", minconn, maxconn)


# PUBLIC_INTERFACE
def close_db_pool() -> None:
    """Close every pooled connection."""
    global _POOL
    if _POOL is None:
        return
    _POOL.closeall()
    _POOL = None
    logger.info("Database pool closed")


@contextmanager
def _get_conn():
    if _POOL is None:
        init_db_pool()
    assert _POOL is not None
    conn = _POOL.getconn()
    try:
        yield conn
    finally:
        _POOL.putconn(conn)


def _dict_cursor(conn):
    return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)


# PUBLIC_INTERFACE
def as_json(value: Any) -> psycopg2.extras.Json:
    """Wrap a dict/list so psycopg2 sends it as a JSON(B) parameter."""
    return psycopg2.extras.Json(value)


# PUBLIC_INTERFACE
def fetch_one(query: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
    """Fetch a single row as a dict, or None."""
    with _get_conn() as conn:
        with _dict_cursor(conn) as cur:
            cur.execute(query, params or [])
            row = cur.fetchone()
            conn.commit()
            return dict(row) if row else None


# PUBLIC_INTERFACE
def fetch_all(query: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
    """Fetch all rows as dicts."""
    with _get_conn() as conn:
        with _dict_cursor(conn) as cur:
            cur.execute(query, params or [])
            rows = cur.fetchall()
            conn.commit()
            return [dict(r) for r in rows]


# PUBLIC_INTERFACE
def fetch_value(query: str, params: Optional[Sequence[Any]] = None) -> Any:
    """Fetch the first column of the first row (e.g. a COUNT), or None."""
    row = fetch_one(query, params)
    if not row:
        return None
    return next(iter(row.values()))


# PUBLIC_INTERFACE
def execute(query: str, params: Optional[Sequence[Any]] = None) -> int:
    """Execute a statement (INSERT/UPDATE/DELETE). Returns affected rowcount."""
    with _get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(query, params or [])
            affected = cur.rowcount
            conn.commit()
            return affected


# PUBLIC_INTERFACE
def execute_returning_one(query: str, params: Optional[Sequence[Any]] = None) -> Dict[str, Any]:
    """Execute a statement with RETURNING and return the first row as dict."""
    with _get_conn() as conn:
        with _dict_cursor(conn) as cur:
            cur.execute(query, params or [])
            row = cur.fetchone()
            if not row:
                conn.rollback()
                raise RuntimeError("Expected one row returned, got none.")
            conn.commit()
            return dict(row)


# PUBLIC_INTERFACE
@contextmanager
def transaction() -> Iterator[Any]:
    """
    Yield a dict cursor whose statements commit together.

    Any exception inside the block rolls the whole transaction back and is
    re-raised.
    """
    with _get_conn() as conn:
        try:
            with _dict_cursor(conn) as cur:
                yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            logger.exception("Transaction rolled back")
            raise
