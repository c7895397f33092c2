"""Student verification endpoints: submission, status, history, and admin review."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from billing_core.licensing.models import MAX_DOCUMENT_BYTES
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from billing_api.dependencies import AdminSessionDep, SessionDep, StorageDep, TenantDep, UserDep
from billing_api.middleware.rbac import Permission, Role, require_permission
from billing_api.schemas import (
    PendingVerificationsResponse,
    ReviewRequest,
    ReviewResponse,
    VerificationStatusResponse,
    VerificationSubmitResponse,
    VerificationSummary,
)
from billing_api.services.student_verification_service import StudentVerificationService, VerificationForm

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/student-verification", tags=["student-verification"])


@router.post("/submit", response_model=VerificationSubmitResponse)
async def submit_verification(
    session: SessionDep,
    storage: StorageDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    full_name: Annotated[str, Form(min_length=1, max_length=256)],
    email: Annotated[str, Form(min_length=3, max_length=256)],
    institution_name: Annotated[str, Form(min_length=1, max_length=256)],
    course_name: Annotated[str, Form(min_length=1, max_length=256)],
    document: Annotated[UploadFile, File()],
    phone: Annotated[str | None, Form(max_length=32)] = None,
    expected_graduation_year: Annotated[int | None, Form(ge=1900, le=2200)] = None,
    _role: Role = Depends(require_permission(Permission.SUBMIT_VERIFICATION)),
) -> dict[str, Any]:
    """Upload an enrollment document and open a pending verification."""
    # One byte past the limit is enough to reject oversized uploads.
    data = await document.read(MAX_DOCUMENT_BYTES + 1)
    service = StudentVerificationService(session, storage, tenant_id=tenant_id)
    return await service.submit(
        user_id,
        VerificationForm(
            full_name=full_name,
            email=email,
            institution_name=institution_name,
            course_name=course_name,
            phone=phone,
            expected_graduation_year=expected_graduation_year,
        ),
        data,
        document.filename or "document",
        document.content_type,
    )


@router.get("/status", response_model=VerificationStatusResponse)
async def get_verification_status(
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
) -> dict[str, Any]:
    """Return the caller's latest verification and block state."""
    return await StudentVerificationService(session, tenant_id=tenant_id).get_status(user_id)


@router.get("/history", response_model=list[VerificationSummary])
async def get_verification_history(
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
) -> list[dict[str, Any]]:
    """Return all of the caller's submissions, newest first."""
    return await StudentVerificationService(session, tenant_id=tenant_id).get_history(user_id)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.get("/admin/pending", response_model=PendingVerificationsResponse)
async def list_pending_verifications(
    session: AdminSessionDep,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.REVIEW_VERIFICATIONS)),
) -> dict[str, Any]:
    """Return the cross-tenant pending queue, oldest first."""
    return await StudentVerificationService(session).list_pending(page, page_size)


@router.post("/admin/review/{verification_id}", response_model=ReviewResponse)
async def review_verification(
    verification_id: str,
    body: ReviewRequest,
    session: AdminSessionDep,
    reviewer_id: UserDep,
    _role: Role = Depends(require_permission(Permission.REVIEW_VERIFICATIONS)),
) -> dict[str, Any]:
    """Approve or reject a pending verification."""
    return await StudentVerificationService(session).review(
        verification_id,
        approved=body.approved,
        reviewer_id=reviewer_id,
        rejection_reason=body.rejection_reason,
    )
