"""peer session metadata

Revision ID: 0001_peer_sessions
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "0001_peer_sessions"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "peer_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("display_name", sa.String(length=64), nullable=False),
        sa.Column("connected_at", sa.DateTime(), nullable=False),
        sa.Column("ended_at", sa.DateTime(), nullable=True),
        sa.Column("end_reason", sa.String(length=64), nullable=True),
        sa.Column("attributes", sa.JSON(), nullable=False),
    )
    op.create_index("ix_peer_sessions_session_id", "peer_sessions", ["session_id"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_peer_sessions_session_id", table_name="peer_sessions")
    op.drop_table("peer_sessions")
