"""Create subscription reconciliation tables

Revision ID: a1c9e0d4b7f2
Revises:
Create Date: 2026-10-18

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a1c9e0d4b7f2"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("username", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("access_level", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("plan_type", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("subscription_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("has_lifetime_access", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("subscription_origin", sa.String(length=16), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index(
        "ix_users_sweep_scan",
        "users",
        ["access_level", "has_lifetime_access", "subscription_expiry"],
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("raw_payload", sa.Text(), nullable=False),
        sa.Column("headers", sa.JSON(), nullable=True),
        sa.Column("source_ip", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_webhook_events_source", "webhook_events", ["source"])

    op.create_table(
        "dedup_records",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("transaction_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("webhook_event_id", sa.BigInteger(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "source", "transaction_id", "event_type", name="uq_dedup_records_key"
        ),
    )

    op.create_table(
        "plan_catalog_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("product_id", sa.String(length=128), nullable=False),
        sa.Column("product_name", sa.String(length=255), nullable=True),
        sa.Column("plan_type", sa.String(length=16), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source", "product_id", name="uq_plan_catalog_source_product"),
    )

    op.create_table(
        "sweep_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("users_scanned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("users_downgraded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False),
    )

    op.create_table(
        "audit_log_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("webhook_event_id", sa.BigInteger(), nullable=True),
        sa.Column("sweep_run_id", sa.BigInteger(), nullable=True),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("transaction_id", sa.String(length=128), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_audit_log_entries_webhook_event_id", "audit_log_entries", ["webhook_event_id"]
    )
    op.create_index(
        "ix_audit_log_filters",
        "audit_log_entries",
        ["source", "event_type", "status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_audit_log_filters", table_name="audit_log_entries")
    op.drop_index("ix_audit_log_entries_webhook_event_id", table_name="audit_log_entries")
    op.drop_table("audit_log_entries")
    op.drop_table("sweep_runs")
    op.drop_table("plan_catalog_entries")
    op.drop_table("dedup_records")
    op.drop_index("ix_webhook_events_source", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_users_sweep_scan", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
