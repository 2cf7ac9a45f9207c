"""Create accounts and sync_jobs tables.

Revision ID: 001_sync_queue
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_sync_queue"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())

    if "accounts" not in tables:
        op.create_table(
            "accounts",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("provider", sa.String(64), nullable=False),
            sa.Column("display_name", sa.String(), nullable=True),
            sa.Column("protocols", sa.JSON(), nullable=True),
            sa.Column("credential_ref", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )

    if "sync_jobs" not in tables:
        op.create_table(
            "sync_jobs",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("account_id", sa.String(36), nullable=False),
            sa.Column("domain", sa.String(16), nullable=False),
            sa.Column("status", sa.String(16), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("attempt_count", sa.Integer(), nullable=False),
            sa.Column("max_attempts", sa.Integer(), nullable=False),
            sa.Column("run_after", sa.DateTime(), nullable=False),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index(op.f("ix_sync_jobs_account_id"), "sync_jobs", ["account_id"], unique=False)
        op.create_index("ix_sync_jobs_status_run_after", "sync_jobs", ["status", "run_after"], unique=False)
        op.create_index(
            "ix_sync_jobs_account_domain_status", "sync_jobs", ["account_id", "domain", "status"], unique=False
        )


def downgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())

    if "sync_jobs" in tables:
        op.drop_index("ix_sync_jobs_account_domain_status", table_name="sync_jobs")
        op.drop_index("ix_sync_jobs_status_run_after", table_name="sync_jobs")
        op.drop_index(op.f("ix_sync_jobs_account_id"), table_name="sync_jobs")
        op.drop_table("sync_jobs")
    if "accounts" in tables:
        op.drop_table("accounts")
