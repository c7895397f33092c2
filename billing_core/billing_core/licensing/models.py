"""Enumerations and named constants for the license/subscription state machine."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from billing_core.errors import ValidationFailure

# ---------------------------------------------------------------------------
# Time constants
# ---------------------------------------------------------------------------

# Extra time past a billing period's end before the license is treated as
# expired, absorbing webhook delivery and processing delay.
PAYMENT_GRACE_WINDOW = timedelta(days=3)

# Free-tier licenses never expire; their end/expiry dates are set this many
# years into the future.
FREE_TIER_NON_EXPIRING_YEARS = 100

# Initial license term created by a checkout completion, before the first
# invoice event supplies the real billing period.
CHECKOUT_INITIAL_TERM_MONTHS = 1

# ---------------------------------------------------------------------------
# Student verification limits
# ---------------------------------------------------------------------------

MAX_REJECTIONS_PER_MONTH = 3
VERIFICATION_BLOCK_DURATION = timedelta(days=30)
MAX_DOCUMENT_BYTES = 10 * 1024 * 1024
ALLOWED_DOCUMENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/png",
        "image/webp",
    }
)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class LicenseStatus(str, Enum):
    """Internal license status."""

    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLING = "cancelling"
    PAYMENT_FAILED = "payment_failed"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class VerificationStatus(str, Enum):
    """Student verification review state."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BillingPeriod(str, Enum):
    """Billing cadence requested at checkout."""

    MONTHLY = "monthly"
    ANNUAL = "annual"

    @classmethod
    def parse(cls, raw: str | None) -> BillingPeriod:
        """Parse a user-supplied period, defaulting to monthly.

        ``yearly`` is accepted as an alias of ``annual``.

        Raises
        ------
        ValidationFailure
            If *raw* is not a recognised period.
        """
        if raw is None or not raw.strip():
            return cls.MONTHLY
        value = raw.strip().lower()
        if value == "yearly":
            return cls.ANNUAL
        try:
            return cls(value)
        except ValueError:
            raise ValidationFailure(f"Unsupported billing period '{raw}'. Use 'monthly' or 'annual'.")


class PlanTier(str, Enum):
    """Catalog tiers, declared from lowest to highest."""

    STUDENT = "Student"
    BASIC_INDIVIDUAL = "BasicIndividual"
    BASIC_PRO = "BasicPro"
    ENTERPRISE_BASIC = "EnterpriseBasic"
    ENTERPRISE_PRO = "EnterprisePro"
    ENTERPRISE_PLUS = "EnterprisePlus"

    @property
    def rank(self) -> int:
        """Position of the tier in the upgrade order (0 = lowest)."""
        return list(PlanTier).index(self)


def tier_rank(tier: str) -> int:
    """Return the rank of a stored tier label, ``-1`` when unknown."""
    try:
        return PlanTier(tier).rank
    except ValueError:
        return -1


# ---------------------------------------------------------------------------
# External status mapping
# ---------------------------------------------------------------------------

EXTERNAL_STATUS_MAP: dict[str, LicenseStatus] = {
    "active": LicenseStatus.ACTIVE,
    "past_due": LicenseStatus.PAST_DUE,
    "canceled": LicenseStatus.CANCELLED,
    "unpaid": LicenseStatus.PAYMENT_FAILED,
    "trialing": LicenseStatus.TRIAL,
}


def map_external_status(raw: str | None) -> LicenseStatus | None:
    """Translate a processor subscription status into a license status.

    Returns ``None`` for unrecognised values, meaning "leave unchanged".
    """
    if not raw:
        return None
    return EXTERNAL_STATUS_MAP.get(raw.strip().lower())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def add_months(moment: datetime, months: int) -> datetime:
    """Shift *moment* by whole calendar months, clamping the day of month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_years(moment: datetime, years: int) -> datetime:
    """Shift *moment* by whole calendar years (Feb 29 becomes Feb 28)."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


def non_expiring_horizon(moment: datetime) -> datetime:
    """Return the sentinel expiry used for free-tier licenses."""
    return add_years(moment, FREE_TIER_NON_EXPIRING_YEARS)


def is_free_plan(plan: Any) -> bool:
    """Return ``True`` when *plan* never requires external billing.

    A plan is free when it is the Student tier or when its monthly price
    is zero.
    """
    if plan.tier == PlanTier.STUDENT.value:
        return True
    return Decimal(plan.monthly_price or 0) == 0
