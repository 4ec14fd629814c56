"""Create sync tables.

Revision ID: 001
Revises:
Create Date: 2026-10-12

Tables:
- folders: User folder tree, soft-deleted with a deleted_at tombstone.
- documents: Markdown documents with a server-owned sync_version.
- session_states: One row per user with the open document IDs shared
  between devices.

Key design decisions:
- VARCHAR(64) primary keys hold client-generated IDs.
- documents.folder_id is not a foreign key: a client may push a document
  before the folder it lives in.
- (user_id, updated_at) indexes serve the incremental ?since= listings.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "folders",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("parent_id", sa.String(64), nullable=True),
        sa.Column("color", sa.String(32), nullable=True),
        sa.Column("icon", sa.String(64), nullable=True),
        sa.Column("sort_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_folders_user_id", "folders", ["user_id"])
    op.create_index("ix_folders_parent_id", "folders", ["parent_id"])
    op.create_index("idx_folders_user_updated", "folders", ["user_id", "updated_at"])

    op.create_table(
        "documents",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("folder_id", sa.String(64), nullable=True),
        sa.Column("name", sa.String(500), nullable=False, server_default="Untitled"),
        sa.Column("content", sa.Text, nullable=False, server_default=""),
        sa.Column("is_manually_named", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("cursor", JSONB, nullable=True),
        sa.Column("scroll", JSONB, nullable=True),
        sa.Column("sync_version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("synced_at", sa.DateTime, nullable=True),
        sa.Column("deleted_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_documents_user_id", "documents", ["user_id"])
    op.create_index("idx_documents_user_updated", "documents", ["user_id", "updated_at"])
    op.create_index("idx_documents_user_folder", "documents", ["user_id", "folder_id"])

    op.create_table(
        "session_states",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("open_document_ids", JSONB, nullable=False, server_default="[]"),
        sa.Column("active_document_id", sa.String(64), nullable=True),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("session_states")
    op.drop_index("idx_documents_user_folder", table_name="documents")
    op.drop_index("idx_documents_user_updated", table_name="documents")
    op.drop_index("ix_documents_user_id", table_name="documents")
    op.drop_table("documents")
    op.drop_index("idx_folders_user_updated", table_name="folders")
    op.drop_index("ix_folders_parent_id", table_name="folders")
    op.drop_index("ix_folders_user_id", table_name="folders")
    op.drop_table("folders")
