"""Plan catalog: purchasable tiers and their external price references.

The catalog is read-only per request.  ``DEFAULT_PLANS`` is the seed data
inserted at startup; processor product/price references are filled in
later by the catalog sync.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.errors import NotFoundError, ValidationFailure
from billing_core.licensing.models import BillingPeriod, PlanTier
from billing_core.state.repository import PaymentPlanRepository
from billing_core.state.tables import PaymentPlanTable

logger = logging.getLogger(__name__)

STUDENT_PLAN_ID = "11111111-1111-1111-1111-111111111111"

DEFAULT_PLANS: list[dict[str, Any]] = [
    {
        "id": STUDENT_PLAN_ID,
        "name": "Student",
        "description": "Free plan for verified students",
        "tier": PlanTier.STUDENT.value,
        "monthly_price": Decimal("0"),
        "yearly_price": Decimal("0"),
        "max_users": 1,
        "included_users": 1,
    },
    {
        "id": "22222222-2222-2222-2222-222222222222",
        "name": "Basic Individual",
        "description": "Individual plan for professionals",
        "tier": PlanTier.BASIC_INDIVIDUAL.value,
        "monthly_price": Decimal("39.90"),
        "yearly_price": Decimal("399.00"),
        "max_users": 1,
        "included_users": 1,
    },
    {
        "id": "33333333-3333-3333-3333-333333333333",
        "name": "Basic Pro",
        "description": "Professional plan with financial tools",
        "tier": PlanTier.BASIC_PRO.value,
        "monthly_price": Decimal("79.90"),
        "yearly_price": Decimal("799.00"),
        "max_users": 1,
        "included_users": 1,
    },
    {
        "id": "44444444-4444-4444-4444-444444444444",
        "name": "Enterprise Basic",
        "description": "Business plan with multiple users",
        "tier": PlanTier.ENTERPRISE_BASIC.value,
        "monthly_price": Decimal("159.90"),
        "yearly_price": Decimal("1599.00"),
        "max_users": 8,
        "included_users": 8,
    },
    {
        "id": "55555555-5555-5555-5555-555555555555",
        "name": "Enterprise Pro",
        "description": "Complete business plan",
        "tier": PlanTier.ENTERPRISE_PRO.value,
        "monthly_price": Decimal("299.90"),
        "yearly_price": Decimal("2999.00"),
        "max_users": 15,
        "included_users": 15,
    },
    {
        "id": "66666666-6666-6666-6666-666666666666",
        "name": "Enterprise Plus",
        "description": "Unlimited business plan",
        "tier": PlanTier.ENTERPRISE_PLUS.value,
        "monthly_price": Decimal("349.90"),
        "yearly_price": Decimal("3499.00"),
        "max_users": -1,
        "included_users": 15,
        "extra_seat_price": Decimal("35.00"),
    },
]


class PlanCatalog:
    """Plan lookups used by the reconciler, orchestrator, and verification flow.

    Parameters
    ----------
    session:
        Active database session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._repo = PaymentPlanRepository(session)

    async def list_active(self) -> list[PaymentPlanTable]:
        """Return active plans ordered by monthly price."""
        return await self._repo.list_active()

    async def get(self, plan_id: str) -> PaymentPlanTable:
        """Return the plan with *plan_id*.

        Raises
        ------
        NotFoundError
            If no plan exists with that id.
        """
        plan = await self._repo.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    async def find(self, plan_id: str) -> PaymentPlanTable | None:
        return await self._repo.get(plan_id)

    async def student_plan(self) -> PaymentPlanTable:
        """Return the active Student-tier plan."""
        plan = await self._repo.get_by_tier(PlanTier.STUDENT.value)
        if plan is None:
            raise NotFoundError("Student plan is not configured")
        return plan

    async def plan_for_price(self, price_id: str | None) -> PaymentPlanTable | None:
        """Map an external price reference back to its catalog plan."""
        if not price_id:
            return None
        return await self._repo.get_by_price_ref(price_id)

    async def seed_defaults(self) -> int:
        """Insert any missing ``DEFAULT_PLANS`` rows; returns the number inserted."""
        inserted = await self._repo.seed(DEFAULT_PLANS)
        if inserted:
            logger.info("Seeded %d default plan(s)", inserted)
        return inserted

    @staticmethod
    def price_ref_for(plan: PaymentPlanTable, period: BillingPeriod) -> str:
        """Resolve the external price reference for *plan* and *period*.

        Raises
        ------
        ValidationFailure
            If the plan has no price reference for the requested period.
        """
        price_id = plan.stripe_price_id_yearly if period == BillingPeriod.ANNUAL else plan.stripe_price_id_monthly
        if not price_id:
            logger.warning("Plan %s has no %s price reference", plan.id, period.value)
            raise ValidationFailure("Plan pricing not configured")
        return price_id
