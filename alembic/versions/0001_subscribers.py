"""subscribers

Revision ID: 0001_subscribers
Revises: 
Create Date: 2026-10-19 00:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_subscribers"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "subscribers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("subscribed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_email_id", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.CheckConstraint("status IN ('pending', 'approved', 'declined')", name="ck_subscribers_status"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscribers_email", "subscribers", ["email"], unique=True)
    op.create_index("idx_subscribers_status", "subscribers", ["status"], unique=False)
    op.create_index("idx_subscribers_subscribed_at", "subscribers", ["subscribed_at"], unique=False)


def downgrade():
    op.drop_index("idx_subscribers_subscribed_at", table_name="subscribers")
    op.drop_index("idx_subscribers_status", table_name="subscribers")
    op.drop_index("ix_subscribers_email", table_name="subscribers")
    op.drop_table("subscribers")
