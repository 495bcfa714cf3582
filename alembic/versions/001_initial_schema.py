"""Initial schema - memories and dedup log

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # ── Memories ─────────────────────────────────────────────────────
    op.create_table(
        "memories",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("content", sa.Text, nullable=False, server_default=""),
        sa.Column("user_id", sa.String(256), nullable=True),
        sa.Column("group_id", sa.String(512), nullable=True,
                  comment="NULL = user layer; scope | scope:docs | scope:session:<id>"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("round_message_id", sa.String(128), nullable=True,
                  comment="Conversational round that produced the record"),
        sa.Column("metadata", JSONType, nullable=True,
                  comment="Full serialized record"),
    )
    op.create_index("ix_memories_user_id", "memories", ["user_id"])
    op.create_index("ix_memories_group_id", "memories", ["group_id"])
    op.create_index("ix_memories_type_group", "memories", ["type", "group_id"])
    op.create_index("ix_memories_updated_at", "memories", ["updated_at"])
    op.create_index("ix_memories_round_message_id", "memories", ["round_message_id"])

    # ── Dedup Log ────────────────────────────────────────────────────
    op.create_table(
        "dedup_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("kept_memory_id", sa.String(64), nullable=False),
        sa.Column("kept_memory_content", sa.Text, nullable=False, server_default=""),
        sa.Column("new_memory_id", sa.String(64), nullable=False),
        sa.Column("new_memory_content", sa.Text, nullable=False, server_default=""),
        sa.Column("new_memory_type", sa.String(64), nullable=False),
        sa.Column("new_memory_payload", JSONType, nullable=True,
                  comment="Suppressed record, serialized for undo"),
        sa.Column("vector_similarity", sa.Float, nullable=False, server_default="-1"),
        sa.Column("text_similarity", sa.Float, nullable=False, server_default="-1"),
        sa.Column("reasoning", sa.Text, nullable=False, server_default=""),
        sa.Column("user_id", sa.String(256), nullable=True),
        sa.Column("group_id", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("rolled_back", sa.Boolean, nullable=False,
                  server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("restored_memory_id", sa.String(64), nullable=True),
    )
    op.create_index("ix_dedup_log_user_id", "dedup_log", ["user_id"])
    op.create_index("ix_dedup_log_group_id", "dedup_log", ["group_id"])
    op.create_index("ix_dedup_log_created_at", "dedup_log", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_dedup_log_created_at", table_name="dedup_log")
    op.drop_index("ix_dedup_log_group_id", table_name="dedup_log")
    op.drop_index("ix_dedup_log_user_id", table_name="dedup_log")
    op.drop_table("dedup_log")

    op.drop_index("ix_memories_round_message_id", table_name="memories")
    op.drop_index("ix_memories_updated_at", table_name="memories")
    op.drop_index("ix_memories_type_group", table_name="memories")
    op.drop_index("ix_memories_group_id", table_name="memories")
    op.drop_index("ix_memories_user_id", table_name="memories")
    op.drop_table("memories")
