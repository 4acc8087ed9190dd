"""account erasure schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None

callback_kind = sa.Enum("execute_deletion", "final_purge", name="callbackkind")
callback_status = sa.Enum("pending", "running", "done", "cancelled", "failed", name="callbackstatus")


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("avatar_path", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deletion_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deletion_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deletion_reason", sa.Text(), nullable=True),
        sa.Column("deletion_request_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("purge_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deletion_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deletion_failure_reason", sa.Text(), nullable=True),
        sa.Column("lifecycle_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_accounts_email", "accounts", ["email"], unique=True)
    op.create_index("ix_accounts_deletion_requested_at", "accounts", ["deletion_requested_at"])
    op.create_index("ix_accounts_deletion_scheduled_at", "accounts", ["deletion_scheduled_at"])
    op.create_index("ix_accounts_deletion_failed_at", "accounts", ["deletion_failed_at"])
    op.create_index("ix_accounts_active_deletion_requested", "accounts", ["is_active", "deletion_requested_at"])

    op.create_table(
        "account_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("jti", sa.String(length=255), nullable=False),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("revoked_reason", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_account_sessions_account_id", "account_sessions", ["account_id"])
    op.create_index("ix_account_sessions_jti", "account_sessions", ["jti"], unique=True)

    op.create_table(
        "account_notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_account_notifications_account_id", "account_notifications", ["account_id"])
    op.create_index("ix_account_notifications_type", "account_notifications", ["type"])

    op.create_table(
        "deletion_callbacks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("deletion_request_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("kind", callback_kind, nullable=False),
        sa.Column("status", callback_status, nullable=False, server_default="pending"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_deletion_callbacks_account_id", "deletion_callbacks", ["account_id"])
    op.create_index("ix_deletion_callbacks_status", "deletion_callbacks", ["status"])
    op.create_index("ix_deletion_callbacks_status_run_at", "deletion_callbacks", ["status", "run_at"])

    op.create_table(
        "email_delivery_failures",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("to_email", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("notification_kind", sa.String(length=50), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_email_delivery_failures_to_email", "email_delivery_failures", ["to_email"])
    op.create_index("ix_email_delivery_failures_created_at", "email_delivery_failures", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_email_delivery_failures_created_at", table_name="email_delivery_failures")
    op.drop_index("ix_email_delivery_failures_to_email", table_name="email_delivery_failures")
    op.drop_table("email_delivery_failures")

    op.drop_index("ix_deletion_callbacks_status_run_at", table_name="deletion_callbacks")
    op.drop_index("ix_deletion_callbacks_status", table_name="deletion_callbacks")
    op.drop_index("ix_deletion_callbacks_account_id", table_name="deletion_callbacks")
    op.drop_table("deletion_callbacks")
    callback_status.drop(op.get_bind(), checkfirst=True)
    callback_kind.drop(op.get_bind(), checkfirst=True)

    op.drop_index("ix_account_notifications_type", table_name="account_notifications")
    op.drop_index("ix_account_notifications_account_id", table_name="account_notifications")
    op.drop_table("account_notifications")

    op.drop_index("ix_account_sessions_jti", table_name="account_sessions")
    op.drop_index("ix_account_sessions_account_id", table_name="account_sessions")
    op.drop_table("account_sessions")

    for index in (
        "ix_accounts_active_deletion_requested",
        "ix_accounts_deletion_failed_at",
        "ix_accounts_deletion_scheduled_at",
        "ix_accounts_deletion_requested_at",
        "ix_accounts_email",
    ):
        op.drop_index(index, table_name="accounts")
    op.drop_table("accounts")
