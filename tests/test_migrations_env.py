"""Tests for the Alembic database URL helpers."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Make migrations importable without alembic context
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from migrations.env_helpers import database_url, dsn_to_url  # noqa: E402


class TestDsnToUrl:
    def test_tcp_host(self):
        dsn = "dbname=wharchive user=admin password=pw host=localhost port=5432"
        assert dsn_to_url(dsn) == "postgresql+psycopg2://admin:pw@localhost:5432/wharchive"

    def test_default_host_and_port(self):
        assert dsn_to_url("dbname=db user=u password=p") == "postgresql+psycopg2://u:p@localhost:5432/db"

    def test_unix_socket(self):
        result = dsn_to_url("dbname=db user=u password=p host=/var/run/postgresql")
        assert result == "postgresql+psycopg2://u:p@/db?host=%2Fvar%2Frun%2Fpostgresql"

    def test_special_chars_encoded(self):
        result = dsn_to_url("dbname=db user=u@domain password='p@ss w0rd' host=h")
        assert "u%40domain" in result
        assert "p%40ss+w0rd" in result

    def test_db_password_fallback(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert "from-env" in dsn_to_url("dbname=db user=u host=h")

    def test_dsn_password_wins(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        result = dsn_to_url("dbname=db user=u password=from-dsn host=h")
        assert "from-dsn" in result
        assert "from-env" not in result


class TestDatabaseUrl:
    def test_missing_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
                database_url()

    @pytest.mark.parametrize(
        "url",
        ["postgres://u:p@h/db", "postgresql://u:p@h/db", "postgresql+psycopg2://u:p@h/db"],
    )
    def test_scheme_normalized(self, url):
        with patch.dict(os.environ, {"DATABASE_URL": url}, clear=True):
            assert database_url() == "postgresql+psycopg2://u:p@h/db"

    def test_db_password_injected_into_url(self):
        env = {"DATABASE_URL": "postgresql://u@h:5433/db", "DB_PASSWORD": "s3cret"}
        with patch.dict(os.environ, env, clear=True):
            assert database_url() == "postgresql+psycopg2://u:s3cret@h:5433/db"

    def test_dsn_converted(self):
        with patch.dict(os.environ, {"DATABASE_URL": "dbname=db user=u password=p host=h"}, clear=True):
            assert database_url().startswith("postgresql+psycopg2://u:p@h")


class TestInitialSchema:
    SQL = (Path(__file__).resolve().parents[1] / "migrations" / "sql" / "001_initial.sql").read_text()

    @pytest.mark.parametrize(
        "table",
        [
            "principals",
            "teams",
            "team_members",
            "sessions",
            "session_assignments",
            "contacts",
            "messages",
            "media_files",
            "sync_runs",
        ],
    )
    def test_tables_created(self, table):
        assert f"CREATE TABLE IF NOT EXISTS {table} (" in self.SQL

    def test_single_active_sync_run_index(self):
        assert "uq_sync_runs_active" in self.SQL


class TestSyncRunLease:
    SQL = (Path(__file__).resolve().parents[1] / "migrations" / "sql" / "002_sync_run_lease.sql").read_text()

    @pytest.mark.parametrize("column", ["worker_id", "heartbeat_at"])
    def test_lease_columns_added(self, column):
        assert f"ADD COLUMN IF NOT EXISTS {column}" in self.SQL
