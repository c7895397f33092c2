"""License ledger, plan catalog, payment events, and verification policy."""

from billing_core.licensing.catalog import DEFAULT_PLANS, STUDENT_PLAN_ID, PlanCatalog
from billing_core.licensing.events import PaymentEvent, PaymentEventKind, parse_payment_event
from billing_core.licensing.ledger import LicenseLedger, Transition
from billing_core.licensing.models import BillingPeriod, LicenseStatus, PlanTier, VerificationStatus

__all__ = [
    "DEFAULT_PLANS",
    "STUDENT_PLAN_ID",
    "BillingPeriod",
    "LicenseLedger",
    "LicenseStatus",
    "PaymentEvent",
    "PaymentEventKind",
    "PlanCatalog",
    "PlanTier",
    "Transition",
    "VerificationStatus",
    "parse_payment_event",
]
