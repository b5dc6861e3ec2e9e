"""Create the pgvector ``knowledge_chunks`` index and the ``work_items`` queue."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "002_create_knowledge_and_work_tables"
down_revision = "001_create_conversation_tables"
branch_labels = None
depends_on = None


_JSONB = postgresql.JSONB(astext_type=sa.Text())
_UUID = postgresql.UUID(as_uuid=True)

EMBEDDING_DIM = 384


def upgrade() -> None:
    """Create knowledge and background work tables."""

    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    op.create_table(
        "knowledge_chunks",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("seq", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("agent_id", sa.String(length=255), nullable=False),
        sa.Column("document_id", sa.String(length=255), nullable=False),
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
    )
    # SQLAlchemy has no native vector type; the column is added in SQL.
    op.execute(
        f"ALTER TABLE knowledge_chunks ADD COLUMN embedding vector({EMBEDDING_DIM}) NOT NULL"
    )
    op.create_index(
        "ix_knowledge_chunks_agent_document",
        "knowledge_chunks",
        ["agent_id", "document_id"],
    )
    op.execute(
        "CREATE INDEX ix_knowledge_chunks_embedding ON knowledge_chunks "
        "USING hnsw (embedding vector_cosine_ops)"
    )

    op.create_table(
        "work_items",
        sa.Column("id", _UUID, primary_key=True, nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column(
            "payload",
            _JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'queued'"),
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column(
            "available_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("leased_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_work_items_status_available_at",
        "work_items",
        ["status", "available_at"],
    )


def downgrade() -> None:
    """Drop knowledge and background work tables."""

    op.drop_index("ix_work_items_status_available_at", table_name="work_items")
    op.drop_table("work_items")
    op.execute("DROP INDEX IF EXISTS ix_knowledge_chunks_embedding")
    op.drop_index("ix_knowledge_chunks_agent_document", table_name="knowledge_chunks")
    op.drop_table("knowledge_chunks")
