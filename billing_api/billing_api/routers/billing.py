"""Billing endpoints: catalog, checkout, subscription management, and the processor webhook."""

from __future__ import annotations

import logging
from typing import Any

from billing_core.errors import AuthenticationFailure, ValidationFailure
from billing_core.licensing.catalog import PlanCatalog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from billing_api.dependencies import (
    CorrelationDep,
    EmailDep,
    EventBusDep,
    GatewayDep,
    PublicSessionDep,
    ReconcilerDep,
    SessionDep,
    SettingsDep,
    TenantDep,
)
from billing_api.middleware.rbac import Permission, Role, require_permission
from billing_api.schemas import (
    BillingConfigResponse,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    PlanChangePreviewResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    PlanListResponse,
    PlanResponse,
    PortalRequest,
    PortalSessionResponse,
    ReactivateResponse,
    SubscriptionResponse,
)
from billing_api.services.plan_change_service import PlanChangeOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def get_orchestrator(
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    event_bus: EventBusDep,
    tenant_id: TenantDep,
    correlation_id: CorrelationDep,
) -> PlanChangeOrchestrator:
    """Build the tenant's plan-change orchestrator for this request."""
    return PlanChangeOrchestrator(
        session,
        settings,
        gateway,
        event_bus,
        tenant_id=tenant_id,
        correlation_id=correlation_id,
    )


# ---------------------------------------------------------------------------
# Public catalog
# ---------------------------------------------------------------------------


@router.get("/config", response_model=BillingConfigResponse)
async def get_billing_config(settings: SettingsDep) -> BillingConfigResponse:
    """Return the publishable key the frontend needs to load the processor's JS."""
    return BillingConfigResponse(
        publishable_key=settings.stripe_publishable_key,
        billing_enabled=settings.billing_enabled,
    )


@router.get("/plans", response_model=PlanListResponse)
async def list_plans(session: PublicSessionDep) -> PlanListResponse:
    """Return active plans, cheapest first."""
    plans = await PlanCatalog(session).list_active()
    return PlanListResponse(
        plans=[
            PlanResponse(
                id=plan.id,
                name=plan.name,
                description=plan.description,
                tier=plan.tier,
                monthly_price=plan.monthly_price,
                yearly_price=plan.yearly_price,
                max_users=plan.max_users,
                included_users=plan.included_users,
                extra_seat_price=plan.extra_seat_price,
                has_monthly_price=bool(plan.stripe_price_id_monthly),
                has_yearly_price=bool(plan.stripe_price_id_yearly),
                has_per_seat_price=bool(plan.stripe_price_id_per_seat),
            )
            for plan in plans
        ]
    )


# ---------------------------------------------------------------------------
# Tenant subscription
# ---------------------------------------------------------------------------


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    email: EmailDep,
    orchestrator: PlanChangeOrchestrator = Depends(get_orchestrator),
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    """Activate a free plan directly or return a processor checkout URL.

    After a paid checkout completes, the processor redirects to
    ``success_url`` and the license is created by the webhook.
    """
    return await orchestrator.create_checkout(
        body.plan_id,
        body.period,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        seats=body.seats,
        customer_email=email,
    )


@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal_session(
    body: PortalRequest,
    orchestrator: PlanChangeOrchestrator = Depends(get_orchestrator),
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    """Return a processor billing-portal URL for the tenant's customer."""
    return await orchestrator.create_portal(body.return_url)


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    orchestrator: PlanChangeOrchestrator = Depends(get_orchestrator),
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
) -> dict[str, Any]:
    """Return the tenant's active license and plan."""
    return await orchestrator.get_subscription()


@router.post("/preview-plan-change", response_model=PlanChangePreviewResponse)
async def preview_plan_change(
    body: PlanChangeRequest,
    orchestrator: PlanChangeOrchestrator = Depends(get_orchestrator),
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    """Price a plan change without applying it."""
    return await orchestrator.preview_plan_change(body.plan_id, body.period)


@router.post("/change-plan", response_model=PlanChangeResponse)
async def change_plan(
    body: PlanChangeRequest,
    orchestrator: PlanChangeOrchestrator = Depends(get_orchestrator),
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    """Swap the subscription to another plan with proration."""
    return await orchestrator.execute_plan_change(body.plan_id, body.period)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    orchestrator: PlanChangeOrchestrator = Depends(get_orchestrator),
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    """Cancel at the end of the current billing period."""
    return await orchestrator.cancel()


@router.post("/reactivate", response_model=ReactivateResponse)
async def reactivate_subscription(
    orchestrator: PlanChangeOrchestrator = Depends(get_orchestrator),
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    """Withdraw a scheduled cancellation."""
    return await orchestrator.reactivate()


# ---------------------------------------------------------------------------
# Processor webhook
# ---------------------------------------------------------------------------


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    reconciler: ReconcilerDep,
) -> JSONResponse:
    """Receive a signed processor event.

    Bypasses bearer authentication; the ``Stripe-Signature`` header is
    verified instead.  Responds 200 for every verified event (including
    duplicates, stale, orphaned and ignored ones), 400 for a bad signature,
    and 500 when processing failed so the processor retries.
    """
    if not settings.billing_enabled:
        return JSONResponse(status_code=200, content={"received": True, "status": "billing_disabled"})

    payload = await request.body()
    try:
        result = await reconciler.handle(
            payload,
            request.headers.get("stripe-signature"),
            correlation_id=getattr(request.state, "correlation_id", None),
        )
    except AuthenticationFailure:
        return JSONResponse(
            status_code=400,
            content={"error": "Webhook signature verification failed", "authentication_failed": True},
        )
    except ValidationFailure as exc:
        return JSONResponse(status_code=400, content={"error": exc.message})
    except Exception:
        logger.exception("Webhook processing failed")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    return JSONResponse(
        status_code=200,
        content={"received": True, "status": result.status.value, "event_id": result.event_id},
    )
