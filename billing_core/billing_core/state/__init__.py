"""State persistence layer using PostgreSQL or SQLite."""

from billing_core.state.database import get_engine, get_session, get_session_factory_for
from billing_core.state.repository import (
    PaymentInvoiceRepository,
    PaymentPlanRepository,
    StudentVerificationRepository,
    TenantLicenseRepository,
)

__all__ = [
    "PaymentInvoiceRepository",
    "PaymentPlanRepository",
    "StudentVerificationRepository",
    "TenantLicenseRepository",
    "get_engine",
    "get_session",
    "get_session_factory_for",
]
