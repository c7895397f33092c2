"""Plan Change Orchestrator: user-initiated checkout, plan changes, and cancellation.

Every mutation that involves the payment processor calls the gateway
first and touches the License Ledger only after the gateway confirmed.
A gateway failure therefore leaves the ledger untouched and is surfaced
to the caller unchanged.  If the process dies between the gateway call and
the ledger write, the next ``customer.subscription.updated`` webhook brings
the ledger back in line.

Free plans (Student tier or zero monthly price) never reach the gateway.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from billing_core.errors import ConflictFailure, NotFoundError, ValidationFailure
from billing_core.licensing.catalog import PlanCatalog
from billing_core.licensing.ledger import LicenseLedger
from billing_core.licensing.models import BillingPeriod, LicenseStatus, is_free_plan, tier_rank
from billing_core.state.tables import PaymentPlanTable, TenantLicenseTable
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.config import APISettings
from billing_api.services.billing_gateway import StripeGateway, as_dict
from billing_api.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)

BILLING_DISABLED_MESSAGE = "Billing is not enabled for this installation."


def _from_epoch(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _first_item(subscription: dict[str, Any]) -> dict[str, Any] | None:
    items = as_dict(subscription.get("items")).get("data") or []
    return as_dict(items[0]) if items else None


def _period_end(subscription: dict[str, Any]) -> datetime | None:
    item = _first_item(subscription) or {}
    return _from_epoch(item.get("current_period_end") or subscription.get("current_period_end"))


def _plan_summary(plan: PaymentPlanTable | None) -> dict[str, Any] | None:
    if plan is None:
        return None
    return {
        "id": plan.id,
        "name": plan.name,
        "tier": plan.tier,
        "monthly_price": plan.monthly_price,
        "max_users": plan.max_users,
    }


class PlanChangeOrchestrator:
    """Tenant-scoped subscription operations.

    Parameters
    ----------
    session:
        Request-scoped database session.
    settings:
        API settings (billing switch, redirect defaults).
    gateway:
        Stripe gateway used for every processor call.
    event_bus:
        Outbound notifier for ``billing.plan_updated``; ``None`` disables it.
    tenant_id:
        The authenticated tenant.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        gateway: StripeGateway,
        event_bus: EventBus | None = None,
        *,
        tenant_id: str,
        correlation_id: str | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._gateway = gateway
        self._event_bus = event_bus
        self._tenant_id = tenant_id
        self._correlation_id = correlation_id
        self._catalog = PlanCatalog(session)
        self._ledger = LicenseLedger(session)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_billing(self) -> None:
        if not self._settings.billing_enabled:
            raise NotFoundError(BILLING_DISABLED_MESSAGE)

    async def _active_plan(self, plan_id: str, message: str = "Payment plan not found") -> PaymentPlanTable:
        plan = await self._catalog.find(plan_id)
        if plan is None or not plan.is_active:
            raise NotFoundError(message)
        return plan

    async def _subscribed_license(self) -> TenantLicenseTable:
        row = await self._ledger.find_active_license(self._tenant_id)
        if row is None or not row.stripe_subscription_id:
            raise NotFoundError("No active subscription found")
        return row

    async def _current_item(self, subscription_id: str) -> tuple[dict[str, Any], dict[str, Any]]:
        subscription = await self._gateway.retrieve_subscription(subscription_id)
        item = _first_item(subscription)
        if item is None or not item.get("id"):
            raise ValidationFailure("No subscription items found")
        return subscription, item

    async def _emit_plan_updated(self, plan: PaymentPlanTable) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.emit(
            EventType.PLAN_UPDATED,
            tenant_id=self._tenant_id,
            data={
                "plan_id": plan.id,
                "plan_tier": plan.tier,
                "updated_at": datetime.now(UTC).isoformat(),
            },
            correlation_id=self._correlation_id,
        )

    # ------------------------------------------------------------------
    # Checkout and portal
    # ------------------------------------------------------------------

    async def create_checkout(
        self,
        plan_id: str,
        period: str | None = None,
        *,
        success_url: str | None = None,
        cancel_url: str | None = None,
        seats: int | None = None,
        customer_email: str | None = None,
    ) -> dict[str, Any]:
        """Start a subscription for *plan_id*.

        Free plans are activated immediately and never reach the gateway;
        repeated calls re-assert the same license.  Paid plans get a
        processor checkout session whose metadata carries the tenant, plan,
        and period so the completion webhook can build the license.

        Returns
        -------
        dict
            ``{"activated": True, ...}`` for free plans, otherwise
            ``{"activated": False, "session_id": ..., "url": ...}``.

        Raises
        ------
        NotFoundError
            Unknown or inactive plan, or billing disabled for a paid plan.
        ValidationFailure
            Unsupported period, or no price reference for the plan and period.
        """
        plan = await self._active_plan(plan_id)
        billing_period = BillingPeriod.parse(period)

        if is_free_plan(plan):
            license_row = await self._ledger.activate_free_plan(self._tenant_id, plan.id, payment_method="free")
            return {
                "activated": True,
                "license_id": license_row.id,
                "plan_id": plan.id,
                "message": f"{plan.name} plan activated successfully",
                "redirect_url": "/dashboard?plan=activated",
            }

        self._require_billing()
        price_id = PlanCatalog.price_ref_for(plan, billing_period)

        extra_seats = 0
        if seats is not None and plan.stripe_price_id_per_seat:
            extra_seats = max(seats - plan.included_users, 0)

        existing = await self._ledger.find_active_license(self._tenant_id)
        session = await self._gateway.create_checkout_session(
            price_id=price_id,
            metadata={
                "tenant_id": self._tenant_id,
                "plan_id": plan.id,
                "period": billing_period.value,
            },
            success_url=success_url or self._settings.checkout_success_url,
            cancel_url=cancel_url or self._settings.checkout_cancel_url,
            customer_id=existing.stripe_customer_id if existing else None,
            customer_email=customer_email,
            extra_seat_price_id=plan.stripe_price_id_per_seat,
            extra_seats=extra_seats,
        )
        logger.info(
            "Created checkout session %s for tenant %s, plan %s, period %s",
            session["session_id"],
            self._tenant_id,
            plan.id,
            billing_period.value,
        )
        return {"activated": False, "session_id": session["session_id"], "url": session["url"]}

    async def create_portal(self, return_url: str | None = None) -> dict[str, Any]:
        """Open a processor billing-portal session for the tenant's customer.

        Raises
        ------
        NotFoundError
            If the tenant has no active license with a customer reference.
        """
        self._require_billing()
        row = await self._ledger.find_active_license(self._tenant_id)
        if row is None or not row.stripe_customer_id:
            raise NotFoundError("No active subscription found")
        return await self._gateway.create_portal_session(
            row.stripe_customer_id,
            return_url or self._settings.portal_return_url,
        )

    async def get_subscription(self) -> dict[str, Any]:
        """Return the tenant's active license with an embedded plan summary."""
        row = await self._ledger.get_active_license(self._tenant_id)
        plan = await self._catalog.find(row.plan_id)
        return {
            "id": row.id,
            "tenant_id": row.tenant_id,
            "status": row.status,
            "start_date": row.start_date,
            "end_date": row.end_date,
            "expires_at": row.expires_at,
            "auto_renew": row.auto_renew,
            "payment_method": row.payment_method,
            "payment_method_last4": row.payment_method_last4,
            "plan": _plan_summary(plan),
        }

    # ------------------------------------------------------------------
    # Plan change
    # ------------------------------------------------------------------

    async def preview_plan_change(self, plan_id: str, period: str | None = None) -> dict[str, Any]:
        """Price a switch to *plan_id* without changing anything."""
        self._require_billing()
        row = await self._subscribed_license()
        new_plan = await self._active_plan(plan_id, "Target plan not found")
        price_id = PlanCatalog.price_ref_for(new_plan, BillingPeriod.parse(period))
        current_plan = await self._catalog.find(row.plan_id)

        subscription, item = await self._current_item(row.stripe_subscription_id)
        preview = await self._gateway.preview_price_change(
            customer_id=row.stripe_customer_id,
            subscription_id=row.stripe_subscription_id,
            item_id=item["id"],
            new_price_id=price_id,
        )
        amount_due = int(preview.get("amount_due") or 0)
        return {
            "current_plan": current_plan.name if current_plan else None,
            "current_tier": current_plan.tier if current_plan else None,
            "new_plan": new_plan.name,
            "new_tier": new_plan.tier,
            "is_upgrade": current_plan is not None and tier_rank(new_plan.tier) > tier_rank(current_plan.tier),
            "prorated_amount": amount_due / 100,
            "currency": preview.get("currency") or self._settings.billing_currency,
            "next_billing_date": _period_end(subscription),
            "immediate_charge": amount_due > 0,
        }

    async def execute_plan_change(self, plan_id: str, period: str | None = None) -> dict[str, Any]:
        """Move the tenant's subscription to *plan_id* with proration.

        The ledger plan reference changes only after the processor accepted
        the swap, and the plan-updated notification goes out only after the
        ledger change is committed.
        """
        self._require_billing()
        row = await self._subscribed_license()
        new_plan = await self._active_plan(plan_id, "Target plan not found")
        price_id = PlanCatalog.price_ref_for(new_plan, BillingPeriod.parse(period))

        _, item = await self._current_item(row.stripe_subscription_id)
        updated = await self._gateway.change_subscription_price(row.stripe_subscription_id, item["id"], price_id)

        old_plan_id = row.plan_id
        await self._ledger.set_plan(self._tenant_id, new_plan.id)
        await self._session.commit()
        logger.info("Plan changed for tenant %s: %s -> %s", self._tenant_id, old_plan_id, new_plan.id)

        await self._emit_plan_updated(new_plan)
        return {
            "success": True,
            "subscription": {
                "id": updated.get("id"),
                "status": updated.get("status"),
                "current_period_end": _period_end(updated),
            },
            "new_plan": {"id": new_plan.id, "name": new_plan.name, "tier": new_plan.tier},
        }

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self) -> dict[str, Any]:
        """Schedule cancellation at the end of the current period."""
        self._require_billing()
        row = await self._subscribed_license()
        subscription = await self._gateway.set_cancel_at_period_end(row.stripe_subscription_id, True)
        await self._ledger.set_status(self._tenant_id, LicenseStatus.CANCELLING)

        cancel_at = _period_end(subscription)
        logger.info("Subscription cancellation scheduled for tenant %s, cancels at %s", self._tenant_id, cancel_at)
        return {
            "success": True,
            "cancel_at": cancel_at,
            "message": "Subscription will be cancelled at the end of the current billing period",
        }

    async def reactivate(self) -> dict[str, Any]:
        """Undo a scheduled cancellation.

        Raises
        ------
        NotFoundError
            If the tenant has no active license with a subscription.
        ConflictFailure
            If the license is neither ``active`` nor ``cancelling``.
        """
        self._require_billing()
        row = await self._ledger.find_active_license(self._tenant_id)
        if row is None or not row.stripe_subscription_id:
            raise NotFoundError("No subscription found to reactivate")
        if row.status not in (LicenseStatus.ACTIVE.value, LicenseStatus.CANCELLING.value):
            raise ConflictFailure(f"Subscription in status '{row.status}' cannot be reactivated")

        await self._gateway.set_cancel_at_period_end(row.stripe_subscription_id, False)
        await self._ledger.set_status(self._tenant_id, LicenseStatus.ACTIVE)
        logger.info("Subscription reactivated for tenant %s", self._tenant_id)
        return {"success": True, "message": "Subscription reactivated successfully"}
