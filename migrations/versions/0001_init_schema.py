from __future__ import annotations

"""init schema

Revision ID: 0001_init_schema
Revises:
Create Date: 2026-10-17

Token ledger, conversations and the pgvector document store used for retrieval.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


revision = "0001_init_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Extensions
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    # pgvector must be available on the server
    op.execute("CREATE EXTENSION IF NOT EXISTS vector;")

    op.create_table(
        "token_balances",
        sa.Column("user_id", sa.Text, primary_key=True),
        sa.Column("balance", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.CheckConstraint("balance >= 0", name="ck_token_balances_non_negative"),
    )

    op.create_table(
        "token_transactions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        # Tie-breaker for rows written within the same clock tick
        sa.Column("seq", sa.BigInteger, sa.Identity(always=True), nullable=False, unique=True),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("reference_id", sa.Text),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("balance_after", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("clock_timestamp()")),
        sa.CheckConstraint(
            "type IN ('signup_bonus', 'chat_message', 'refund', 'purchase')",
            name="ck_token_transactions_type",
        ),
    )
    op.create_index("idx_token_transactions_user", "token_transactions", ["user_id", "created_at", "seq"])

    op.create_table(
        "conversations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.Text),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("idx_conversations_user_updated", "conversations", ["user_id", "updated_at"])

    op.create_table(
        "messages",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "conversation_id",
            UUID(as_uuid=True),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("clock_timestamp()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("clock_timestamp()")),
    )
    op.create_index("idx_messages_conversation_created", "messages", ["conversation_id", "created_at"])

    op.create_table(
        "documents",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("source", sa.Text, nullable=False),
        sa.Column("metadata", JSONB, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )

    op.execute("""
        CREATE TABLE document_chunks (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            document_id UUID NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
            chunk_index INT NOT NULL DEFAULT 0,
            content TEXT NOT NULL,
            embedding vector(1536),
            metadata JSONB DEFAULT '{}'::jsonb,
            created_at TIMESTAMPTZ DEFAULT now()
        )
    """)

    # HNSW index for fast approximate nearest neighbor search
    op.execute("""
        CREATE INDEX idx_document_chunks_embedding ON document_chunks
        USING hnsw (embedding vector_cosine_ops)
        WITH (m = 16, ef_construction = 64)
    """)
    op.execute("CREATE INDEX idx_document_chunks_document ON document_chunks(document_id)")

    # Ranked cosine-similarity search used by the retrieval service
    op.execute("""
        CREATE OR REPLACE FUNCTION match_chunks(query_embedding vector(1536), match_count INT)
        RETURNS TABLE (
            chunk_id UUID,
            document_id UUID,
            content TEXT,
            similarity FLOAT,
            metadata JSONB,
            document_title TEXT,
            document_source TEXT
        )
        LANGUAGE sql STABLE
        AS $$
            SELECT
                c.id AS chunk_id,
                c.document_id,
                c.content,
                1 - (c.embedding <=> query_embedding) AS similarity,
                c.metadata,
                d.title AS document_title,
                d.source AS document_source
            FROM document_chunks c
            JOIN documents d ON d.id = c.document_id
            WHERE c.embedding IS NOT NULL
            ORDER BY c.embedding <=> query_embedding
            LIMIT match_count
        $$
    """)


def downgrade() -> None:
    op.execute("DROP FUNCTION IF EXISTS match_chunks(vector, INT)")
    op.execute("DROP INDEX IF EXISTS idx_document_chunks_document")
    op.execute("DROP INDEX IF EXISTS idx_document_chunks_embedding")
    op.execute("DROP TABLE IF EXISTS document_chunks")
    op.drop_table("documents")
    op.drop_index("idx_messages_conversation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("idx_conversations_user_updated", table_name="conversations")
    op.drop_table("conversations")
    op.drop_index("idx_token_transactions_user", table_name="token_transactions")
    op.drop_table("token_transactions")
    op.drop_table("token_balances")
