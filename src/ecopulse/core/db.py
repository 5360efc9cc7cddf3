# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Database connection management for EcoPulse.

Config via ECOPULSE_DB_* environment variables. Driver errors are
re-raised as ``DatabaseException`` so callers can tell an unavailable
store apart from a domain error.
"""

from __future__ import annotations

import threading
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

import psycopg2
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor

from .exceptions import DatabaseException

_pool: psycopg2_pool.ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> psycopg2_pool.ThreadedConnectionPool:
    """Get or create the connection pool."""
    from .config import get_config

    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                config = get_config()
                try:
                    _pool = psycopg2_pool.ThreadedConnectionPool(
                        minconn=config.db_pool_min,
                        maxconn=config.db_pool_max,
                        connect_timeout=config.db_pool_timeout,
                        **config.connection_params,
                    )
                except psycopg2.Error as e:
                    raise DatabaseException(f"Failed to create connection pool: {e}") from e
    return _pool


def _get_healthy_connection(pool: psycopg2_pool.ThreadedConnectionPool) -> Any:
    """Get a connection from the pool, discarding stale ones."""
    max_attempts = 3
    for _ in range(max_attempts):
        try:
            conn = pool.getconn()
        except psycopg2.Error as e:
            raise DatabaseException(f"Failed to get connection: {e}") from e
        if not conn.closed:
            return conn
        pool.putconn(conn, close=True)
    raise DatabaseException("Failed to get healthy connection after multiple attempts")


@contextmanager
def get_cursor() -> Generator[Any, None, None]:
    """Get a cursor with commit on success, rollback on error.

    Usage:
        with get_cursor() as cur:
            cur.execute("SELECT * FROM observations WHERE id = %s", (oid,))
            row = cur.fetchone()
    """
    pool = _get_pool()
    conn = _get_healthy_connection(pool)
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            yield cur
        conn.commit()
    except psycopg2.Error as e:
        conn.rollback()
        raise DatabaseException(f"Database error: {e}") from e
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


@contextmanager
def get_connection() -> Generator[Any, None, None]:
    """Get a raw connection for connection-level control (migrations)."""
    pool = _get_pool()
    conn = _get_healthy_connection(pool)
    try:
        yield conn
    finally:
        pool.putconn(conn)


def close_pool() -> None:
    """Close the connection pool."""
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


def check_connection() -> bool:
    """Check if database connection is working."""
    try:
        with get_cursor() as cur:
            cur.execute("SELECT 1")
        return True
    except DatabaseException:
        return False
