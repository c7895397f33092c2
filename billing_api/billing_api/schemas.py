"""Shared Pydantic request and response models for API endpoints.

These schemas validate endpoint payloads and document them in the OpenAPI
specification.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Catalog schemas
# ---------------------------------------------------------------------------


class BillingConfigResponse(BaseModel):
    """Publishable processor configuration for the frontend."""

    publishable_key: str
    billing_enabled: bool


class PlanResponse(BaseModel):
    """A purchasable plan returned by ``GET /billing/plans``."""

    id: str
    name: str
    description: str | None = None
    tier: str
    monthly_price: Decimal
    yearly_price: Decimal | None = None
    max_users: int
    included_users: int
    extra_seat_price: Decimal | None = None
    has_monthly_price: bool = False
    has_yearly_price: bool = False
    has_per_seat_price: bool = False

    model_config = {"from_attributes": True}


class PlanListResponse(BaseModel):
    plans: list[PlanResponse]


# ---------------------------------------------------------------------------
# Subscription schemas
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Request body for ``POST /billing/checkout``."""

    plan_id: str = Field(..., description="Catalog plan to subscribe to.")
    period: str | None = Field(None, description="'monthly' (default) or 'annual'.")
    success_url: str | None = Field(None, description="Redirect after successful checkout.")
    cancel_url: str | None = Field(None, description="Redirect if the customer abandons checkout.")
    seats: int | None = Field(None, ge=1, description="Total seats for per-seat plans.")


class CheckoutResponse(BaseModel):
    """Either an immediate free-plan activation or a checkout redirect."""

    activated: bool
    session_id: str | None = None
    url: str | None = None
    license_id: str | None = None
    plan_id: str | None = None
    message: str | None = None
    redirect_url: str | None = None


class PortalRequest(BaseModel):
    """Request body for ``POST /billing/portal``."""

    return_url: str | None = Field(None, description="URL to return to after leaving the portal.")


class PortalSessionResponse(BaseModel):
    url: str


class SubscriptionPlanSummary(BaseModel):
    id: str
    name: str
    tier: str
    monthly_price: Decimal
    max_users: int


class SubscriptionResponse(BaseModel):
    """The tenant's active license."""

    id: str
    tenant_id: str
    status: str
    start_date: datetime
    end_date: datetime | None = None
    expires_at: datetime | None = None
    auto_renew: bool
    payment_method: str
    payment_method_last4: str | None = None
    plan: SubscriptionPlanSummary | None = None


class PlanChangeRequest(BaseModel):
    """Request body for plan-change preview and execution."""

    plan_id: str
    period: str | None = None


class PlanChangePreviewResponse(BaseModel):
    current_plan: str | None = None
    current_tier: str | None = None
    new_plan: str
    new_tier: str
    is_upgrade: bool
    prorated_amount: float
    currency: str
    next_billing_date: datetime | None = None
    immediate_charge: bool


class PlanChangeResponse(BaseModel):
    success: bool
    subscription: dict[str, Any]
    new_plan: dict[str, Any]


class CancelResponse(BaseModel):
    success: bool
    cancel_at: datetime | None = None
    message: str


class ReactivateResponse(BaseModel):
    success: bool
    message: str


# ---------------------------------------------------------------------------
# Student verification schemas
# ---------------------------------------------------------------------------


class VerificationSubmitResponse(BaseModel):
    verification_id: str
    status: str
    message: str


class VerificationSummary(BaseModel):
    id: str
    status: str
    full_name: str
    institution_name: str
    course_name: str
    rejection_reason: str | None = None
    submitted_at: datetime
    reviewed_at: datetime | None = None


class VerificationStatusResponse(BaseModel):
    has_verification: bool
    verification: VerificationSummary | None = None
    is_blocked: bool
    blocked_until: datetime | None = None
    rejections_this_month: int
    max_rejections_allowed: int


class VerificationAdminItem(VerificationSummary):
    tenant_id: str
    user_id: str
    email: str
    phone: str | None = None
    expected_graduation_year: int | None = None
    document_file_name: str
    document_storage_path: str
    document_content_type: str
    document_size: int


class PendingVerificationsResponse(BaseModel):
    items: list[VerificationAdminItem]
    total: int
    page: int
    page_size: int
    total_pages: int


class ReviewRequest(BaseModel):
    """Request body for ``POST /student-verification/admin/review/{id}``."""

    approved: bool
    rejection_reason: str | None = Field(None, max_length=2000)


class ReviewResponse(BaseModel):
    verification_id: str
    status: str
    is_blocked: bool
    blocked_until: datetime | None = None
    message: str
