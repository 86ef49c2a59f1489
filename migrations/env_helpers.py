"""Database URL resolution for Alembic.

Kept apart from env.py so it can be imported without alembic.context.
"""

from __future__ import annotations

import os
from urllib.parse import quote_plus, urlsplit, urlunsplit

from psycopg2.extensions import parse_dsn

_DRIVER_SCHEME = "postgresql+psycopg2"


def _with_password(url: str, password: str) -> str:
    parts = urlsplit(url)
    if parts.password or not parts.hostname:
        return url
    user = quote_plus(parts.username or "")
    host = parts.hostname + (f":{parts.port}" if parts.port else "")
    netloc = f"{user}:{quote_plus(password)}@{host}"
    return urlunsplit(parts._replace(netloc=netloc))


def dsn_to_url(dsn: str) -> str:
    """Turn a libpq key=value DSN into a SQLAlchemy URL.

    A host starting with "/" is a unix socket directory and goes into the
    query string.
    """
    params = parse_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD", "")
    user = quote_plus(params.get("user", ""))
    auth = f"{user}:{quote_plus(password)}@" if user or password else ""
    dbname = quote_plus(params.get("dbname", ""))
    host = params.get("host", "localhost")
    port = params.get("port", "5432")

    if host.startswith("/"):
        return f"{_DRIVER_SCHEME}://{auth}/{dbname}?host={quote_plus(host)}"
    return f"{_DRIVER_SCHEME}://{auth}{host}:{port}/{dbname}"


def database_url() -> str:
    """SQLAlchemy URL for migrations, from DATABASE_URL (+ DB_PASSWORD)."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" not in url:
        return dsn_to_url(url)

    scheme, rest = url.split("://", 1)
    if scheme in ("postgres", "postgresql"):
        url = f"{_DRIVER_SCHEME}://{rest}"
    db_password = os.environ.get("DB_PASSWORD", "")
    if db_password:
        url = _with_password(url, db_password)
    return url
