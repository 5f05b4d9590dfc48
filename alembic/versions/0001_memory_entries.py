"""Memory entries table.

Revision ID: 0001_memory_entries
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "0001_memory_entries"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "memory_entries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("bead_id", sa.String(), nullable=True),
        sa.Column("epic_id", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("chat_id", sa.String(), nullable=True),
        sa.Column("agent_name", sa.String(), nullable=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("intent_anchors", sa.JSON(), nullable=True),
        sa.Column("relevance_score", sa.Float(), nullable=False, server_default="1.0"),
        # Stored as naive UTC; the model's UTCDateTime restores the zone
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("idx_memory_project", "memory_entries", ["project_id"])
    op.create_index("idx_memory_bead", "memory_entries", ["bead_id"])
    op.create_index("idx_memory_epic", "memory_entries", ["epic_id"])
    op.create_index("idx_memory_constraints", "memory_entries", ["project_id", "kind"])
    op.create_index("idx_memory_created", "memory_entries", ["created_at"])
    op.create_index("idx_memory_expires", "memory_entries", ["expires_at"])
    op.create_index("idx_memory_session_chat", "memory_entries", ["session_id", "chat_id"])


def downgrade() -> None:
    op.drop_index("idx_memory_session_chat", table_name="memory_entries")
    op.drop_index("idx_memory_expires", table_name="memory_entries")
    op.drop_index("idx_memory_created", table_name="memory_entries")
    op.drop_index("idx_memory_constraints", table_name="memory_entries")
    op.drop_index("idx_memory_epic", table_name="memory_entries")
    op.drop_index("idx_memory_bead", table_name="memory_entries")
    op.drop_index("idx_memory_project", table_name="memory_entries")
    op.drop_table("memory_entries")
