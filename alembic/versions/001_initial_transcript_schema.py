"""Initial transcript schema.

Revision ID: 001
Create Date: 2026-10-19

No database-level foreign key constraints for DuckDB compatibility.
Referential integrity is enforced in the application/repository layer.
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "chats",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner", sa.String(255), nullable=False, index=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("model", sa.String(255), nullable=True),
        sa.Column("provider", sa.String(100), nullable=True),
        sa.Column("parent_chat_id", sa.String(36), nullable=True, index=True),
        sa.Column("branch_point", sa.Integer, nullable=True),
        sa.Column("is_shared", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("share_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_chats_owner_updated", "chats", ["owner", "updated_at"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("chat_id", sa.String(36), nullable=False, index=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sequence_number", sa.Integer, nullable=False, server_default="0"),
        sa.Column("attachments_json", sa.Text, nullable=True),
        sa.Column("versions_json", sa.Text, nullable=True),
        sa.Column("current_version_index", sa.Integer, nullable=True),
        sa.Column("is_streaming", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_aborted", sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_messages_chat_created", "messages", ["chat_id", "created_at"])

    op.create_table(
        "attachments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("storage_ref", sa.String(1000), nullable=False),
        sa.Column("file_name", sa.String(500), nullable=False),
        sa.Column("file_type", sa.String(255), nullable=True),
        sa.Column("file_size", sa.Integer, nullable=True),
        sa.Column("uploaded_by", sa.String(255), nullable=False, index=True),
        sa.Column("extracted_text", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("attachments")
    op.drop_index("ix_messages_chat_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_chats_owner_updated", table_name="chats")
    op.drop_table("chats")
