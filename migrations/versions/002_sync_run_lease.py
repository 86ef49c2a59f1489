"""Sync run worker lease (worker_id, heartbeat_at).

Revision ID: 002_sync_run_lease
Revises: 001_initial_schema
Create Date: 2026-10-18
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_sync_run_lease"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None

SQL_FILE = Path(__file__).resolve().parents[1] / "sql" / "002_sync_run_lease.sql"


def upgrade() -> None:
    op.get_bind().exec_driver_sql(SQL_FILE.read_text(encoding="utf-8"))


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_sync_runs_started_heartbeat")
    op.execute("ALTER TABLE sync_runs DROP COLUMN IF EXISTS heartbeat_at")
    op.execute("ALTER TABLE sync_runs DROP COLUMN IF EXISTS worker_id")
