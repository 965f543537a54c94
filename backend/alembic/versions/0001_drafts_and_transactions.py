"""Draft records and committed transactions.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-17
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    op.create_table(
        "draft_records",
        sa.Column("session_id", sa.String(64), primary_key=True),
        sa.Column("flow", sa.String(50), nullable=False),
        sa.Column("schema_version", sa.Integer(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "committed_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("idempotency_key", sa.String(64), nullable=False),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("flow", sa.String(50), nullable=False),
        sa.Column("line_count", sa.Integer(), server_default="0"),
        sa.Column("grand_total", sa.Numeric(14, 2), server_default="0"),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_committed_transactions_idempotency_key",
        "committed_transactions",
        ["idempotency_key"],
        unique=True,
    )
    op.create_index(
        "ix_committed_transactions_session_id",
        "committed_transactions",
        ["session_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_committed_transactions_session_id", table_name="committed_transactions")
    op.drop_index("ix_committed_transactions_idempotency_key", table_name="committed_transactions")
    op.drop_table("committed_transactions")
    op.drop_table("draft_records")
