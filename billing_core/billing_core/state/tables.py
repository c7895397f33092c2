"""SQLAlchemy 2.0 ORM table definitions for the licensing state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by ``create_all`` bootstrapping and the repository layer.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    PostgreSQL returns aware values for ``timestamptz`` columns; SQLite
    stores naive strings.  Values are normalised to UTC on the way in and
    re-tagged as UTC on the way out so that comparisons between stored
    timestamps and ``datetime.now(UTC)`` behave identically on both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all licensing tables."""


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------


class PaymentPlanTable(Base):
    """Purchasable plan tier with its external product/price references.

    ``max_users`` of ``-1`` means unlimited.  The ``stripe_*`` reference
    columns stay empty until the catalog sync creates the matching
    processor objects.
    """

    __tablename__ = "payment_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    yearly_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    max_users: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    included_users: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    extra_seat_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    stripe_product_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_price_id_monthly: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_price_id_yearly: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_price_id_per_seat: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_plans_tier", "tier"),
        Index("ix_payment_plans_price_monthly", "stripe_price_id_monthly"),
        Index("ix_payment_plans_price_yearly", "stripe_price_id_yearly"),
    )


# ---------------------------------------------------------------------------
# License ledger
# ---------------------------------------------------------------------------


class TenantLicenseTable(Base):
    """Authoritative per-tenant subscription record.

    At most one row per tenant may have ``is_active = true``; this is
    enforced by a partial unique index on both PostgreSQL and SQLite.
    Inactive rows are retained as history and never deleted.

    ``version`` is the ORM version counter: every flush of a modified row
    issues ``UPDATE ... WHERE id = :id AND version = :expected`` so that a
    concurrent writer that loaded the same version fails with
    ``StaleDataError`` instead of silently overwriting.

    ``last_event_at`` is the processor ``created`` timestamp of the newest
    event applied to this row; older events are skipped.
    """

    __tablename__ = "tenant_licenses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("payment_plans.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="trial")
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    payment_method: Mapped[str] = mapped_column(String(64), nullable=False, default="card")
    payment_method_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_payment_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('trial','active','cancelling','payment_failed','past_due','cancelled')",
            name="ck_tenant_licenses_status",
        ),
        Index(
            "uq_tenant_licenses_active_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_tenant_licenses_customer", "stripe_customer_id"),
        Index("ix_tenant_licenses_subscription", "stripe_subscription_id"),
    )


class PaymentInvoiceTable(Base):
    """Append-only record of a successful charge, keyed by processor invoice id."""

    __tablename__ = "payment_invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    license_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenant_licenses.id"), nullable=False)
    stripe_invoice_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="brl")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="paid")
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_invoices_tenant", "tenant_id"),
        Index("ix_payment_invoices_license", "license_id"),
    )


# ---------------------------------------------------------------------------
# Student verification
# ---------------------------------------------------------------------------


class StudentVerificationTable(Base):
    """One student-plan verification submission and its review outcome.

    A partial unique index allows only one ``pending`` row per
    ``(tenant_id, user_id)``.  ``is_blocked`` / ``blocked_until`` are written
    only on the rejection that brings the user's monthly rejection count to
    the threshold.
    """

    __tablename__ = "student_verifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    full_name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    institution_name: Mapped[str] = mapped_column(String(256), nullable=False)
    course_name: Mapped[str] = mapped_column(String(256), nullable=False)
    expected_graduation_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    document_file_name: Mapped[str] = mapped_column(String(256), nullable=False)
    document_storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    document_content_type: Mapped[str] = mapped_column(String(128), nullable=False)
    document_size: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blocked_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','approved','rejected')",
            name="ck_student_verifications_status",
        ),
        Index(
            "uq_student_verifications_pending_user",
            "tenant_id",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_student_verifications_user_status", "tenant_id", "user_id", "status"),
        Index("ix_student_verifications_status_submitted", "status", "submitted_at"),
    )
