"""Add slave registry and per-attempt log tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261009_0002"
down_revision = "20261002_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "slaves",
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("capacity", sa.Integer(), server_default="1", nullable=False),
        sa.Column("capabilities_json", sa.Text(), nullable=True),
        sa.Column("load", sa.Integer(), server_default="0", nullable=False),
        sa.Column("connected", sa.Boolean(), server_default=sa.text("0"), nullable=False),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disconnected_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("worker_id"),
    )

    op.create_table(
        "render_task_attempt_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("level", sa.String(), server_default="info", nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("progress", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["attempt_id"],
            ["render_task_attempts.attempt_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_render_task_attempt_logs_attempt_id",
        "render_task_attempt_logs",
        ["attempt_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(
        "ix_render_task_attempt_logs_attempt_id",
        table_name="render_task_attempt_logs",
    )
    op.drop_table("render_task_attempt_logs")
    op.drop_table("slaves")
