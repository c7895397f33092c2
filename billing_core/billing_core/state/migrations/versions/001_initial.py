"""Initial licensing schema.

Creates the plan catalog, the license ledger with its one-active-license
partial index and version counter, the append-only invoice table, and the
student verification table with its one-pending-per-user partial index.

Revision ID: 001
Revises:
Create Date: 2026-06-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "payment_plans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tier", sa.String(32), nullable=False),
        sa.Column("monthly_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("yearly_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("max_users", sa.Integer(), nullable=False),
        sa.Column("included_users", sa.Integer(), nullable=False),
        sa.Column("extra_seat_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("stripe_product_id", sa.String(256), nullable=True),
        sa.Column("stripe_price_id_monthly", sa.String(256), nullable=True),
        sa.Column("stripe_price_id_yearly", sa.String(256), nullable=True),
        sa.Column("stripe_price_id_per_seat", sa.String(256), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_payment_plans_tier", "payment_plans", ["tier"])
    op.create_index("ix_payment_plans_price_monthly", "payment_plans", ["stripe_price_id_monthly"])
    op.create_index("ix_payment_plans_price_yearly", "payment_plans", ["stripe_price_id_yearly"])

    op.create_table(
        "tenant_licenses",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("plan_id", sa.String(36), sa.ForeignKey("payment_plans.id"), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("payment_method", sa.String(64), nullable=False),
        sa.Column("payment_method_last4", sa.String(4), nullable=True),
        sa.Column("stripe_customer_id", sa.String(256), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(256), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('trial','active','cancelling','payment_failed','past_due','cancelled')",
            name="ck_tenant_licenses_status",
        ),
    )
    op.create_index(
        "uq_tenant_licenses_active_tenant",
        "tenant_licenses",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )
    op.create_index("ix_tenant_licenses_customer", "tenant_licenses", ["stripe_customer_id"])
    op.create_index("ix_tenant_licenses_subscription", "tenant_licenses", ["stripe_subscription_id"])

    op.create_table(
        "payment_invoices",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("license_id", sa.String(36), sa.ForeignKey("tenant_licenses.id"), nullable=False),
        sa.Column("stripe_invoice_id", sa.String(256), nullable=False, unique=True),
        sa.Column("stripe_payment_intent_id", sa.String(256), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_payment_invoices_tenant", "payment_invoices", ["tenant_id"])
    op.create_index("ix_payment_invoices_license", "payment_invoices", ["license_id"])

    op.create_table(
        "student_verifications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("full_name", sa.String(256), nullable=False),
        sa.Column("email", sa.String(256), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("institution_name", sa.String(256), nullable=False),
        sa.Column("course_name", sa.String(256), nullable=False),
        sa.Column("expected_graduation_year", sa.Integer(), nullable=True),
        sa.Column("document_file_name", sa.String(256), nullable=False),
        sa.Column("document_storage_path", sa.String(1024), nullable=False),
        sa.Column("document_content_type", sa.String(128), nullable=False),
        sa.Column("document_size", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.String(128), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_blocked", sa.Boolean(), nullable=False),
        sa.Column("blocked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending','approved','rejected')",
            name="ck_student_verifications_status",
        ),
    )
    op.create_index(
        "uq_student_verifications_pending_user",
        "student_verifications",
        ["tenant_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "ix_student_verifications_user_status",
        "student_verifications",
        ["tenant_id", "user_id", "status"],
    )
    op.create_index(
        "ix_student_verifications_status_submitted",
        "student_verifications",
        ["status", "submitted_at"],
    )


def downgrade() -> None:
    op.drop_table("student_verifications")
    op.drop_table("payment_invoices")
    op.drop_table("tenant_licenses")
    op.drop_table("payment_plans")
