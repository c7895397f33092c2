"""Create processor products and prices for catalog plans that lack them.

Runs once at startup when ``API_STRIPE_SEED_PRODUCTS=true``.  Only missing
references are created, so repeated runs are no-ops and existing
subscriptions keep their prices.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from billing_core.errors import GatewayFailure
from billing_core.state.repository import PaymentPlanRepository
from billing_core.state.tables import PaymentPlanTable
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.services.billing_gateway import StripeGateway

logger = logging.getLogger(__name__)


def _minor_units(amount: Decimal | None) -> int:
    return int((Decimal(amount or 0) * 100).to_integral_value())


@dataclass
class SyncReport:
    """Counts of processor objects created by one sync run."""

    products_created: int = 0
    prices_created: int = 0
    skipped_free: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class CatalogSyncService:
    """Fill in ``stripe_*`` references on paid active plans.

    Parameters
    ----------
    session:
        Session whose transaction the caller commits.
    gateway:
        Stripe gateway used to create products and prices.
    currency:
        Currency for newly created prices.
    """

    def __init__(self, session: AsyncSession, gateway: StripeGateway, currency: str = "brl") -> None:
        self._session = session
        self._gateway = gateway
        self._currency = currency
        self._repo = PaymentPlanRepository(session)

    async def sync(self) -> SyncReport:
        """Create every missing product and price; gateway errors skip the plan."""
        report = SyncReport()
        plans = await self._repo.list_active()
        logger.info("Starting catalog sync for %d plan(s)", len(plans))

        for plan in plans:
            if _minor_units(plan.monthly_price) == 0 and _minor_units(plan.yearly_price) == 0:
                logger.info("Skipping free plan %s", plan.name)
                report.skipped_free.append(plan.id)
                continue
            try:
                await self._sync_plan(plan, report)
            except GatewayFailure as exc:
                logger.error("Stripe error syncing plan %s: %s", plan.name, exc.message)
                report.failed.append(plan.id)
            await self._session.flush()

        logger.info(
            "Catalog sync completed: %d product(s), %d price(s) created",
            report.products_created,
            report.prices_created,
        )
        return report

    async def _sync_plan(self, plan: PaymentPlanTable, report: SyncReport) -> None:
        metadata = {"plan_id": plan.id, "tier": plan.tier}

        if not plan.stripe_product_id:
            plan.stripe_product_id = await self._gateway.create_product(plan.name, plan.description, metadata)
            report.products_created += 1
            logger.info("Created product %s for plan %s", plan.stripe_product_id, plan.name)

        wanted = (
            ("stripe_price_id_monthly", plan.monthly_price, "month", "monthly"),
            ("stripe_price_id_yearly", plan.yearly_price, "year", "annual"),
            ("stripe_price_id_per_seat", plan.extra_seat_price, "month", "per_seat"),
        )
        for attr, amount, interval, period in wanted:
            if getattr(plan, attr) or _minor_units(amount) <= 0:
                continue
            price_id = await self._gateway.create_recurring_price(
                product_id=plan.stripe_product_id,
                unit_amount=_minor_units(amount),
                currency=self._currency,
                interval=interval,
                metadata={**metadata, "period": period},
            )
            setattr(plan, attr, price_id)
            report.prices_created += 1
            logger.info("Created %s price %s for plan %s", period, price_id, plan.name)
