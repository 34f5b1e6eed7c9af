"""Create job orchestration, pending provisioning and tenant tables.

Revision ID: 5a1c0e7d9b42
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "5a1c0e7d9b42"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "jobs",
    sa.Column("job_id", sa.String(), primary_key=True),
    sa.Column("tenant_id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=True),
    sa.Column("job_kind", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'queued'")),
    sa.Column("parent_job_id", sa.String(), sa.ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=True),
    sa.Column("request_json", postgresql.JSONB(), nullable=False),
    sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("progress_message", sa.Text(), nullable=True),
    sa.Column("result_path", sa.String(), nullable=True),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("tokens_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
    sa.Column("expected_children", sa.Integer(), nullable=True),
    sa.Column("idempotency_key", sa.String(), nullable=False, unique=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
  )
  op.create_index("ix_jobs_status_kind", "jobs", ["status", "job_kind"], unique=False)
  op.create_index("ix_jobs_parent_job_id", "jobs", ["parent_job_id"], unique=False)
  op.create_index("ix_jobs_tenant_id", "jobs", ["tenant_id"], unique=False)

  op.create_table(
    "pending_provisioning",
    sa.Column("id", sa.String(), primary_key=True),
    sa.Column("checkout_session_id", sa.String(), nullable=False, unique=True),
    sa.Column("email", sa.String(), nullable=False),
    sa.Column("password_hash", sa.String(), nullable=False),
    sa.Column("first_name", sa.String(), nullable=False),
    sa.Column("last_name", sa.String(), nullable=False),
    sa.Column("company_name", sa.String(), nullable=False),
    sa.Column("industry", sa.String(), nullable=True),
    sa.Column("team_size", sa.String(), nullable=True),
    sa.Column("plan", sa.String(), nullable=False),
    sa.Column("seat_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
    sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'awaiting_payment'")),
    sa.Column("stripe_customer_id", sa.String(), nullable=True),
    sa.Column("stripe_subscription_id", sa.String(), nullable=True),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("tenant_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_pending_provisioning_status_paid_at", "pending_provisioning", ["status", "paid_at"], unique=False)

  op.create_table(
    "tenants",
    sa.Column("id", sa.String(), primary_key=True),
    sa.Column("slug", sa.String(), nullable=False, unique=True),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("industry", sa.String(), nullable=True),
    sa.Column("team_size", sa.String(), nullable=True),
    sa.Column("plan", sa.String(), nullable=False),
    sa.Column("seat_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
    sa.Column("stripe_customer_id", sa.String(), nullable=True),
    sa.Column("stripe_subscription_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
  )
  op.create_table(
    "tenant_users",
    sa.Column("id", sa.String(), primary_key=True),
    sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
    sa.Column("identity_id", sa.String(), nullable=False, unique=True),
    sa.Column("email", sa.String(), nullable=False),
    sa.Column("first_name", sa.String(), nullable=False),
    sa.Column("last_name", sa.String(), nullable=False),
    sa.Column("role", sa.String(), nullable=False, server_default=sa.text("'admin'")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
  )
  op.create_index("ix_tenant_users_tenant_id", "tenant_users", ["tenant_id"], unique=False)
  op.create_index("ix_tenant_users_email", "tenant_users", ["email"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index("ix_tenant_users_email", table_name="tenant_users")
  op.drop_index("ix_tenant_users_tenant_id", table_name="tenant_users")
  op.drop_table("tenant_users")
  op.drop_table("tenants")
  op.drop_index("ix_pending_provisioning_status_paid_at", table_name="pending_provisioning")
  op.drop_table("pending_provisioning")
  op.drop_index("ix_jobs_tenant_id", table_name="jobs")
  op.drop_index("ix_jobs_parent_job_id", table_name="jobs")
  op.drop_index("ix_jobs_status_kind", table_name="jobs")
  op.drop_table("jobs")
