"""psycopg2 connection and transaction helpers for the Postgres store.

Provides:
- get_conn(): New connection from DATABASE_URL (+ DB_PASSWORD)
- txn(): One short transaction per store call
"""

import os
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

from wharchive.domain.errors import DataIntegrityError


def get_conn() -> PgConnection:
    """Open a connection to DATABASE_URL.

    If DB_PASSWORD is set and the DSN carries no password, it is passed
    separately so secrets can be injected without rewriting the DSN.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")

    db_password = os.environ.get("DB_PASSWORD")
    if db_password and not _dsn_has_password(dsn):
        return psycopg2.connect(dsn, password=db_password)
    return psycopg2.connect(dsn)


def _dsn_has_password(dsn: str) -> bool:
    if "://" in dsn:
        netloc = dsn.split("://", 1)[1].split("/", 1)[0]
        if "@" not in netloc:
            return False
        userinfo = netloc.rsplit("@", 1)[0]
        return ":" in userinfo
    return "password=" in dsn


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Run the block in one transaction and yield its cursor.

    A connection opened here is closed on exit. Commits on success and
    rolls back on any exception. Constraint violations (foreign keys,
    CHECKs, uniques not covered by ON CONFLICT) surface as
    DataIntegrityError.

    Example:
        with txn() as cur:
            cur.execute("UPDATE sessions SET status = %s WHERE id = %s", (status, sid))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except psycopg2.IntegrityError as e:
        conn.rollback()
        raise DataIntegrityError(f"constraint violated: {e.pgcode or 'unknown'}") from e
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()
