"""
Database connection helper.

This module centralizes how connections are created. Right now we use
`psycopg.connect(db_url)` which opens a new connection per call.

Why this exists:
- Single place to swap connection strategy (pooling, async driver, etc.).
- Keeps repository code focused on SQL and row mapping.
- Translates driver errors into `StorageFailure` so callers never need
  to import psycopg.

Usage:
    from db import get_conn, storage_errors
    with storage_errors("ping"):
        with get_conn(db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
"""

from contextlib import contextmanager

import psycopg

from errors import StorageFailure


def get_conn(db_url: str):
    """Return a new psycopg connection for `db_url`.

    We add a short `connect_timeout` so HTTP requests and worker ticks
    don't hang indefinitely if the database is unreachable.
    """

    return psycopg.connect(db_url, connect_timeout=5)


@contextmanager
def storage_errors(operation: str):
    """Re-raise any psycopg error as `StorageFailure`."""

    try:
        yield
    except psycopg.Error as exc:
        raise StorageFailure(f"{operation} failed: {exc}") from exc
