"""Repository classes providing CRUD access to the licensing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.state.tables import (
    PaymentInvoiceTable,
    PaymentPlanTable,
    StudentVerificationTable,
    TenantLicenseTable,
)

logger = logging.getLogger(__name__)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# PaymentPlanRepository
# ---------------------------------------------------------------------------


class PaymentPlanRepository:
    """Read access to the plan catalog plus idempotent seeding."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_active(self) -> list[PaymentPlanTable]:
        """Return active plans ordered by monthly price (cheapest first)."""
        stmt = (
            select(PaymentPlanTable)
            .where(PaymentPlanTable.is_active.is_(True))
            .order_by(PaymentPlanTable.monthly_price.asc(), PaymentPlanTable.name.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get(self, plan_id: str) -> PaymentPlanTable | None:
        """Fetch a plan by primary key (active or not)."""
        result = await self._session.execute(select(PaymentPlanTable).where(PaymentPlanTable.id == plan_id))
        return result.scalar_one_or_none()

    async def get_by_tier(self, tier: str) -> PaymentPlanTable | None:
        """Return the active plan for *tier*, if any."""
        stmt = (
            select(PaymentPlanTable)
            .where(
                PaymentPlanTable.tier == tier,
                PaymentPlanTable.is_active.is_(True),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_price_ref(self, price_id: str) -> PaymentPlanTable | None:
        """Return the plan owning the monthly, yearly, or per-seat *price_id*."""
        stmt = (
            select(PaymentPlanTable)
            .where(
                or_(
                    PaymentPlanTable.stripe_price_id_monthly == price_id,
                    PaymentPlanTable.stripe_price_id_yearly == price_id,
                    PaymentPlanTable.stripe_price_id_per_seat == price_id,
                )
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def seed(self, plans: list[dict[str, Any]]) -> int:
        """Insert catalog rows that do not exist yet.

        Existing rows (matched by ``id``) are left untouched so that
        administrative edits and synced processor references survive
        restarts.

        Returns
        -------
        int
            Number of rows inserted.
        """
        inserted = 0
        for plan in plans:
            result = await _dialect_upsert_nothing(
                self._session,
                PaymentPlanTable,
                values=dict(plan),
                index_elements=["id"],
            )
            inserted += max(result.rowcount or 0, 0)  # type: ignore[attr-defined]
        await self._session.flush()
        return inserted


# ---------------------------------------------------------------------------
# TenantLicenseRepository
# ---------------------------------------------------------------------------


class TenantLicenseRepository:
    """Lookups and inserts for license rows.

    Lookups by processor reference are cross-tenant because webhook events
    identify the license only by customer or subscription id.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_active(self, tenant_id: str) -> TenantLicenseTable | None:
        """Return the tenant's single active license row."""
        stmt = select(TenantLicenseTable).where(
            TenantLicenseTable.tenant_id == tenant_id,
            TenantLicenseTable.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_by_customer(self, customer_id: str) -> TenantLicenseTable | None:
        """Return the active license carrying *customer_id*."""
        stmt = (
            select(TenantLicenseTable)
            .where(
                TenantLicenseTable.stripe_customer_id == customer_id,
                TenantLicenseTable.is_active.is_(True),
            )
            .order_by(TenantLicenseTable.updated_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_subscription(self, subscription_id: str) -> TenantLicenseTable | None:
        """Return the license for *subscription_id*, preferring the active row."""
        stmt = (
            select(TenantLicenseTable)
            .where(TenantLicenseTable.stripe_subscription_id == subscription_id)
            .order_by(TenantLicenseTable.is_active.desc(), TenantLicenseTable.updated_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: str) -> list[TenantLicenseTable]:
        """Return every license row (active and historical) for a tenant."""
        stmt = (
            select(TenantLicenseTable)
            .where(TenantLicenseTable.tenant_id == tenant_id)
            .order_by(TenantLicenseTable.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(self, **fields: Any) -> TenantLicenseTable:
        """Insert a new license row and flush it."""
        row = TenantLicenseTable(**fields)
        self._session.add(row)
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# PaymentInvoiceRepository
# ---------------------------------------------------------------------------


class PaymentInvoiceRepository:
    """Append-only access to recorded invoices."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_if_absent(
        self,
        *,
        invoice_id: str,
        tenant_id: str,
        license_id: str,
        stripe_invoice_id: str,
        amount: Decimal,
        currency: str,
        status: str,
        paid_at: datetime | None,
        stripe_payment_intent_id: str | None = None,
    ) -> bool:
        """Insert an invoice row unless one exists for *stripe_invoice_id*.

        Uses ``ON CONFLICT DO NOTHING`` on the unique processor invoice id,
        so concurrent deliveries of the same event record exactly one row.

        Returns
        -------
        bool
            ``True`` if a row was inserted, ``False`` on a duplicate.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            PaymentInvoiceTable,
            values={
                "id": invoice_id,
                "tenant_id": tenant_id,
                "license_id": license_id,
                "stripe_invoice_id": stripe_invoice_id,
                "stripe_payment_intent_id": stripe_payment_intent_id,
                "amount": amount,
                "currency": currency,
                "status": status,
                "paid_at": paid_at,
            },
            index_elements=["stripe_invoice_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_for_license(self, license_id: str) -> list[PaymentInvoiceTable]:
        """Return invoices recorded against a license, newest first."""
        stmt = (
            select(PaymentInvoiceTable)
            .where(PaymentInvoiceTable.license_id == license_id)
            .order_by(PaymentInvoiceTable.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# StudentVerificationRepository
# ---------------------------------------------------------------------------


class StudentVerificationRepository:
    """Verification submissions, optionally scoped to one tenant.

    When constructed with ``tenant_id=None`` the repository operates across
    tenants; this is used only by the admin review queue.
    """

    def __init__(self, session: AsyncSession, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id

    def _scoped(self, stmt: Any) -> Any:
        if self._tenant_id is None:
            return stmt
        return stmt.where(StudentVerificationTable.tenant_id == self._tenant_id)

    async def create(self, **fields: Any) -> StudentVerificationTable:
        """Insert a new submission and flush it."""
        row = StudentVerificationTable(**fields)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, verification_id: str) -> StudentVerificationTable | None:
        stmt = self._scoped(select(StudentVerificationTable).where(StudentVerificationTable.id == verification_id))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def decide(
        self,
        verification_id: str,
        *,
        status: str,
        reviewed_by: str,
        reviewed_at: datetime,
        rejection_reason: str | None = None,
    ) -> bool:
        """Move a pending submission to *status*.

        The update only matches a row that is still pending, so of two
        concurrent reviewers exactly one succeeds.  Returns ``False`` when
        the row was already decided.
        """
        stmt = self._scoped(
            update(StudentVerificationTable)
            .where(
                StudentVerificationTable.id == verification_id,
                StudentVerificationTable.status == "pending",
            )
            .values(
                status=status,
                reviewed_by=reviewed_by,
                reviewed_at=reviewed_at,
                rejection_reason=rejection_reason,
                updated_at=reviewed_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get_pending(self, user_id: str) -> StudentVerificationTable | None:
        """Return the user's pending submission, if any."""
        stmt = self._scoped(
            select(StudentVerificationTable).where(
                StudentVerificationTable.user_id == user_id,
                StudentVerificationTable.status == "pending",
            )
        )
        result = await self._session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def get_latest(self, user_id: str) -> StudentVerificationTable | None:
        """Return the user's most recent submission."""
        stmt = self._scoped(
            select(StudentVerificationTable)
            .where(StudentVerificationTable.user_id == user_id)
            .order_by(StudentVerificationTable.submitted_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_history(self, user_id: str) -> list[StudentVerificationTable]:
        """Return all of the user's submissions, newest first."""
        stmt = self._scoped(
            select(StudentVerificationTable)
            .where(StudentVerificationTable.user_id == user_id)
            .order_by(StudentVerificationTable.submitted_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_rejection_times(self, user_id: str, since: datetime) -> list[datetime]:
        """Return review timestamps of the user's rejections at or after *since*, oldest first."""
        stmt = self._scoped(
            select(StudentVerificationTable.reviewed_at)
            .where(
                StudentVerificationTable.user_id == user_id,
                StudentVerificationTable.status == "rejected",
                StudentVerificationTable.reviewed_at.is_not(None),
                StudentVerificationTable.reviewed_at >= since,
            )
            .order_by(StudentVerificationTable.reviewed_at.asc())
        )
        result = await self._session.execute(stmt)
        return [ts for ts in result.scalars().all() if ts is not None]

    async def count_rejections_between(self, user_id: str, start: datetime, end: datetime) -> int:
        """Count the user's rejections reviewed in ``[start, end)``."""
        stmt = self._scoped(
            select(func.count(StudentVerificationTable.id)).where(
                StudentVerificationTable.user_id == user_id,
                StudentVerificationTable.status == "rejected",
                StudentVerificationTable.reviewed_at >= start,
                StudentVerificationTable.reviewed_at < end,
            )
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def get_stored_block(self, user_id: str, now: datetime) -> StudentVerificationTable | None:
        """Return the row carrying the user's latest unexpired stored block."""
        stmt = self._scoped(
            select(StudentVerificationTable)
            .where(
                StudentVerificationTable.user_id == user_id,
                StudentVerificationTable.is_blocked.is_(True),
                StudentVerificationTable.blocked_until > now,
            )
            .order_by(StudentVerificationTable.blocked_until.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_pending(
        self,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[StudentVerificationTable], int, int]:
        """Return one page of pending submissions, oldest first.

        Returns
        -------
        tuple
            ``(rows, total_count, total_pages)``.
        """
        page = max(page, 1)
        page_size = min(max(page_size, 1), 100)

        count_stmt = self._scoped(
            select(func.count(StudentVerificationTable.id)).where(StudentVerificationTable.status == "pending")
        )
        total = int((await self._session.execute(count_stmt)).scalar_one() or 0)

        stmt = self._scoped(
            select(StudentVerificationTable)
            .where(StudentVerificationTable.status == "pending")
            .order_by(StudentVerificationTable.submitted_at.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self._session.execute(stmt)
        total_pages = math.ceil(total / page_size) if total else 0
        return list(result.scalars().all()), total, total_pages
