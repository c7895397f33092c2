"""License Ledger: the authoritative per-tenant subscription record.

Every mutation is a single-row upsert that stamps ``updated_at``.  Rows
are protected by two mechanisms:

* **Event ordering** -- mutations driven by processor events carry the
  event's ``created`` timestamp.  An event older than the row's
  ``last_event_at`` is skipped, so out-of-order delivery cannot roll a
  license back to an earlier state.
* **Compare-and-swap** -- the ORM ``version`` counter makes a concurrent
  writer that loaded the same row fail with ``StaleDataError`` on flush
  rather than silently overwriting.  Webhook callers surface this as a
  retryable failure.

The ledger never commits; callers own the transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.errors import NotFoundError, ValidationFailure
from billing_core.licensing.models import (
    CHECKOUT_INITIAL_TERM_MONTHS,
    PAYMENT_GRACE_WINDOW,
    LicenseStatus,
    add_months,
    non_expiring_horizon,
)
from billing_core.state.repository import TenantLicenseRepository
from billing_core.state.tables import TenantLicenseTable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Transition:
    """Outcome of a ledger mutation.

    Attributes
    ----------
    license:
        The row after the mutation (unchanged when ``applied`` is false).
    applied:
        ``False`` when the driving event was skipped, either because it was
        older than the row's newest applied event or because it named a
        subscription that had already ended.
    previous_status:
        Status before the mutation.
    created:
        ``True`` when the mutation inserted a new row.
    previous_plan_id:
        Plan reference before the mutation.
    """

    license: TenantLicenseTable
    applied: bool
    previous_status: str
    created: bool = False
    previous_plan_id: str | None = None

    @property
    def plan_changed(self) -> bool:
        return self.applied and self.previous_plan_id is not None and self.license.plan_id != self.previous_plan_id

    @property
    def status_changed(self) -> bool:
        return self.applied and self.license.status != self.previous_status


class LicenseLedger:
    """Reads and single-row mutations of tenant licenses.

    Parameters
    ----------
    session:
        Active database session.  The ledger flushes but never commits.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._repo = TenantLicenseRepository(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_active_license(self, tenant_id: str) -> TenantLicenseTable:
        """Return the tenant's active license.

        Raises
        ------
        NotFoundError
            If the tenant has no active license.
        """
        row = await self._repo.get_active(tenant_id)
        if row is None:
            raise NotFoundError(f"No active license for tenant {tenant_id}")
        return row

    async def find_active_license(self, tenant_id: str) -> TenantLicenseTable | None:
        return await self._repo.get_active(tenant_id)

    @staticmethod
    def is_stale(row: TenantLicenseTable, event_at: datetime | None) -> bool:
        """Return ``True`` if *event_at* predates the newest event applied to *row*."""
        if event_at is None or row.last_event_at is None:
            return False
        return event_at < row.last_event_at

    # ------------------------------------------------------------------
    # Event-driven mutations
    # ------------------------------------------------------------------

    async def upsert_on_checkout(
        self,
        tenant_id: str,
        plan_id: str | None,
        customer_id: str | None,
        subscription_id: str | None,
        *,
        event_at: datetime | None = None,
    ) -> Transition:
        """Record a completed checkout for *tenant_id*.

        Updates the tenant's active license in place (processor references,
        status ``active``, plan when supplied) or creates one with a
        one-month initial term when none exists.  A checkout naming a
        subscription whose license has already been closed is skipped.

        Raises
        ------
        ValidationFailure
            If a new license must be created but no plan id is known.
        """
        now = _utcnow()
        row = await self._repo.get_active(tenant_id)

        if row is None:
            # A subscription that already ended never reopens a license.
            ended = await self._repo.get_by_subscription(subscription_id) if subscription_id else None
            if ended is not None and (not ended.is_active or self.is_stale(ended, event_at)):
                logger.info(
                    "Checkout for tenant %s references ended subscription %s (license %s); skipped",
                    tenant_id,
                    subscription_id,
                    ended.id,
                )
                return Transition(license=ended, applied=False, previous_status=ended.status)
            if not plan_id:
                raise ValidationFailure(f"Cannot create a license for tenant {tenant_id} without a plan")
            end_date = add_months(now, CHECKOUT_INITIAL_TERM_MONTHS)
            row = await self._repo.create(
                tenant_id=tenant_id,
                plan_id=plan_id,
                status=LicenseStatus.ACTIVE.value,
                start_date=now,
                end_date=end_date,
                expires_at=end_date + PAYMENT_GRACE_WINDOW,
                auto_renew=True,
                is_active=True,
                payment_method="card",
                stripe_customer_id=customer_id,
                stripe_subscription_id=subscription_id,
                last_event_at=event_at,
            )
            logger.info("License %s created from checkout for tenant %s", row.id, tenant_id)
            return Transition(license=row, applied=True, previous_status=LicenseStatus.TRIAL.value, created=True)

        previous = row.status
        if self.is_stale(row, event_at):
            return Transition(license=row, applied=False, previous_status=previous)

        if customer_id:
            row.stripe_customer_id = customer_id
        if subscription_id:
            row.stripe_subscription_id = subscription_id
        if plan_id:
            row.plan_id = plan_id
        row.status = LicenseStatus.ACTIVE.value
        row.payment_method = "card"
        row.auto_renew = True
        self._stamp(row, event_at)
        await self._session.flush()
        logger.info("License %s updated from checkout for tenant %s", row.id, tenant_id)
        return Transition(license=row, applied=True, previous_status=previous)

    async def record_payment(
        self,
        customer_id: str,
        *,
        period_end: datetime | None,
        paid_at: datetime | None = None,
        event_at: datetime | None = None,
    ) -> Transition:
        """Apply a successful payment to the active license of *customer_id*.

        Sets status ``active``, the last-payment timestamp, and an expiry of
        the invoice period end plus the payment grace window.

        Raises
        ------
        NotFoundError
            If no active license carries *customer_id*.
        """
        row = await self._repo.get_active_by_customer(customer_id)
        if row is None:
            raise NotFoundError(f"No active license for customer {customer_id}")

        previous = row.status
        if self.is_stale(row, event_at):
            return Transition(license=row, applied=False, previous_status=previous)

        row.status = LicenseStatus.ACTIVE.value
        row.last_payment_date = paid_at or _utcnow()
        if period_end is not None:
            row.end_date = period_end
            row.expires_at = period_end + PAYMENT_GRACE_WINDOW
        self._stamp(row, event_at)
        await self._session.flush()
        return Transition(license=row, applied=True, previous_status=previous)

    async def mark_payment_failed(
        self,
        customer_id: str,
        *,
        event_at: datetime | None = None,
    ) -> Transition:
        """Set the active license of *customer_id* to ``payment_failed``.

        Raises
        ------
        NotFoundError
            If no active license carries *customer_id*.
        """
        row = await self._repo.get_active_by_customer(customer_id)
        if row is None:
            raise NotFoundError(f"No active license for customer {customer_id}")

        previous = row.status
        if self.is_stale(row, event_at):
            return Transition(license=row, applied=False, previous_status=previous)

        row.status = LicenseStatus.PAYMENT_FAILED.value
        self._stamp(row, event_at)
        await self._session.flush()
        return Transition(license=row, applied=True, previous_status=previous)

    async def apply_status_transition(
        self,
        subscription_id: str,
        new_status: LicenseStatus | None,
        expires_at: datetime | None = None,
        *,
        plan_id: str | None = None,
        event_at: datetime | None = None,
    ) -> Transition:
        """Apply a processor subscription update to the matching license.

        Parameters
        ----------
        subscription_id:
            External subscription reference identifying the license.
        new_status:
            Target status; ``None`` leaves the status unchanged.
        expires_at:
            New grace-adjusted expiry, when the event carries an end date.
        plan_id:
            Catalog plan matching the subscription's current price, when known.
        event_at:
            Processor timestamp of the driving event.

        Raises
        ------
        NotFoundError
            If no license carries *subscription_id*.
        """
        row = await self._repo.get_by_subscription(subscription_id)
        if row is None:
            raise NotFoundError(f"No license for subscription {subscription_id}")

        previous = row.status
        previous_plan = row.plan_id
        if self.is_stale(row, event_at):
            return Transition(license=row, applied=False, previous_status=previous)

        if new_status is not None:
            row.status = new_status.value
        if expires_at is not None:
            row.expires_at = expires_at
        if plan_id and plan_id != row.plan_id:
            logger.info("License %s plan corrected %s -> %s from subscription update", row.id, row.plan_id, plan_id)
            row.plan_id = plan_id
        self._stamp(row, event_at)
        await self._session.flush()
        return Transition(license=row, applied=True, previous_status=previous, previous_plan_id=previous_plan)

    async def cancel_subscription(
        self,
        subscription_id: str,
        *,
        event_at: datetime | None = None,
    ) -> Transition:
        """Mark the license for *subscription_id* cancelled and inactive.

        The row is kept as history; ``is_active`` is cleared so the tenant
        can later obtain a new active license.

        Raises
        ------
        NotFoundError
            If no license carries *subscription_id*.
        """
        row = await self._repo.get_by_subscription(subscription_id)
        if row is None:
            raise NotFoundError(f"No license for subscription {subscription_id}")

        previous = row.status
        if self.is_stale(row, event_at):
            return Transition(license=row, applied=False, previous_status=previous)

        now = _utcnow()
        row.status = LicenseStatus.CANCELLED.value
        row.is_active = False
        row.auto_renew = False
        if row.cancelled_at is None:
            row.cancelled_at = now
        self._stamp(row, event_at)
        await self._session.flush()
        return Transition(license=row, applied=True, previous_status=previous)

    # ------------------------------------------------------------------
    # Request-driven mutations
    # ------------------------------------------------------------------

    async def activate_free_plan(
        self,
        tenant_id: str,
        plan_id: str,
        payment_method: str = "free",
    ) -> TenantLicenseTable:
        """Put *tenant_id* on a free plan with non-expiring dates.

        Overwrites the tenant's active license when one exists, otherwise
        creates it.  Repeated calls re-assert the same state.
        """
        now = _utcnow()
        horizon = non_expiring_horizon(now)
        row = await self._repo.get_active(tenant_id)

        if row is None:
            row = await self._repo.create(
                tenant_id=tenant_id,
                plan_id=plan_id,
                status=LicenseStatus.ACTIVE.value,
                start_date=now,
                end_date=horizon,
                expires_at=horizon,
                auto_renew=False,
                is_active=True,
                payment_method=payment_method,
            )
            logger.info("Free plan %s activated for tenant %s (new license %s)", plan_id, tenant_id, row.id)
            return row

        row.plan_id = plan_id
        row.status = LicenseStatus.ACTIVE.value
        row.end_date = horizon
        row.expires_at = horizon
        row.auto_renew = False
        row.payment_method = payment_method
        row.cancelled_at = None
        await self._session.flush()
        logger.info("Free plan %s activated for tenant %s (license %s)", plan_id, tenant_id, row.id)
        return row

    async def set_plan(self, tenant_id: str, plan_id: str) -> TenantLicenseTable:
        """Point the tenant's active license at *plan_id*.

        Raises
        ------
        NotFoundError
            If the tenant has no active license.
        """
        row = await self.get_active_license(tenant_id)
        row.plan_id = plan_id
        await self._session.flush()
        return row

    async def set_status(self, tenant_id: str, status: LicenseStatus) -> TenantLicenseTable:
        """Set the status of the tenant's active license.

        Raises
        ------
        NotFoundError
            If the tenant has no active license.
        """
        row = await self.get_active_license(tenant_id)
        row.status = status.value
        await self._session.flush()
        return row

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _stamp(row: TenantLicenseTable, event_at: datetime | None) -> None:
        row.updated_at = _utcnow()
        if event_at is not None and (row.last_event_at is None or event_at > row.last_event_at):
            row.last_event_at = event_at
