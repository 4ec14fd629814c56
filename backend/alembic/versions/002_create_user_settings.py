"""Create user_settings table.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

One row per user holding editor preferences as a JSON object. Writes
shallow-merge top-level keys, so two devices changing different settings
do not overwrite each other.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "user_settings",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("settings", JSONB, nullable=False, server_default="{}"),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("user_settings")
