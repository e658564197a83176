"""create notifications, preferences and digest queue

Revision ID: 202610170003
Revises: 202610170002
Create Date: 2026-10-17 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170003"
down_revision: str | None = "202610170002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("link", sa.String(length=512), nullable=True),
        sa.Column("request_id", sa.Uuid(), nullable=True),
        sa.Column("company_id", sa.Uuid(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_notifications_user_read",
        "notifications",
        ["user_id", "is_read", "created_at"],
        unique=False,
    )

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("email_on_comment", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_on_status_change", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_on_assignment", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_on_mention", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_on_due_date", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_digest_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("email_digest_frequency", sa.String(length=16), nullable=False, server_default="daily"),
        sa.Column("push_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    op.create_table(
        "email_digest_items",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("html", sa.Text(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("frequency", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_email_digest_items_pending",
        "email_digest_items",
        ["frequency", "sent_at", "user_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_email_digest_items_pending", table_name="email_digest_items")
    op.drop_table("email_digest_items")
    op.drop_table("notification_preferences")
    op.drop_index("ix_notifications_user_read", table_name="notifications")
    op.drop_table("notifications")
