"""Create ``conversations`` and ``conversation_messages`` tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001_create_conversation_tables"
down_revision = None
branch_labels = None
depends_on = None


_JSONB = postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    """Create conversation storage; message ids order a conversation's history."""

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("agent_id", sa.String(length=255), nullable=False),
        sa.Column(
            "channel",
            sa.String(length=64),
            nullable=False,
            server_default=sa.text("'web'"),
        ),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'active'"),
        ),
        sa.Column(
            "metadata",
            _JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('active', 'paused', 'ended', 'transferred')",
            name="ck_conversations_status",
        ),
    )
    op.create_index("ix_conversations_agent_id", "conversations", ["agent_id"])

    op.create_table(
        "conversation_messages",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.String(length=64),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "metadata",
            _JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint(
            "role IN ('user', 'assistant', 'system', 'function')",
            name="ck_conversation_messages_role",
        ),
    )
    op.create_index(
        "ix_conversation_messages_conversation_id_id",
        "conversation_messages",
        ["conversation_id", "id"],
    )


def downgrade() -> None:
    """Drop conversation storage."""

    op.drop_index(
        "ix_conversation_messages_conversation_id_id",
        table_name="conversation_messages",
    )
    op.drop_table("conversation_messages")
    op.drop_index("ix_conversations_agent_id", table_name="conversations")
    op.drop_table("conversations")
