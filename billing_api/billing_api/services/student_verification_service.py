"""Student Verification Workflow: document submission and admin review.

Each submission moves ``pending -> approved`` or ``pending -> rejected`` and
never leaves a decided state.  Approval puts the submitter's tenant on the
Student plan.  The rejection that brings a user's rejections in one calendar
month to the limit stores a block on that row; the same block is also
derived from rejection history on every read, and submissions are refused
while either reports one.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from billing_core.errors import ConflictFailure, NotFoundError, ValidationFailure, VerificationBlockedError
from billing_core.licensing.catalog import PlanCatalog
from billing_core.licensing.ledger import LicenseLedger
from billing_core.licensing.models import (
    ALLOWED_DOCUMENT_TYPES,
    MAX_DOCUMENT_BYTES,
    MAX_REJECTIONS_PER_MONTH,
    VerificationStatus,
    add_months,
)
from billing_core.licensing.verification_policy import (
    BlockStatus,
    block_until_for_rejection,
    derive_block_status,
    history_window_start,
    month_start,
)
from billing_core.state.repository import StudentVerificationRepository
from billing_core.state.tables import StudentVerificationTable
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.services.storage_service import LocalStorageService

logger = logging.getLogger(__name__)

STORAGE_FOLDER = "student-verifications"

_UNSAFE_SEGMENT_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def _folder_segment(value: str) -> str:
    return _UNSAFE_SEGMENT_CHARS.sub("_", value) or "_"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class VerificationForm:
    """Applicant details sent alongside the enrollment document."""

    full_name: str
    email: str
    institution_name: str
    course_name: str
    phone: str | None = None
    expected_graduation_year: int | None = None


def _summary(row: StudentVerificationTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "status": row.status,
        "full_name": row.full_name,
        "institution_name": row.institution_name,
        "course_name": row.course_name,
        "rejection_reason": row.rejection_reason,
        "submitted_at": row.submitted_at,
        "reviewed_at": row.reviewed_at,
    }


def _admin_view(row: StudentVerificationTable) -> dict[str, Any]:
    return {
        **_summary(row),
        "tenant_id": row.tenant_id,
        "user_id": row.user_id,
        "email": row.email,
        "phone": row.phone,
        "expected_graduation_year": row.expected_graduation_year,
        "document_file_name": row.document_file_name,
        "document_storage_path": row.document_storage_path,
        "document_content_type": row.document_content_type,
        "document_size": row.document_size,
    }


class StudentVerificationService:
    """Submission, status, and review of student verifications.

    Parameters
    ----------
    session:
        Database session.  Tenant-scoped for submitter operations; the
        admin queue and review use a cross-tenant session with
        ``tenant_id=None``.
    storage:
        Document storage backend; required only for :meth:`submit`.
    tenant_id:
        The submitter's tenant, or ``None`` for admin operations.
    """

    def __init__(
        self,
        session: AsyncSession,
        storage: LocalStorageService | None = None,
        *,
        tenant_id: str | None = None,
    ) -> None:
        self._session = session
        self._storage = storage
        self._tenant_id = tenant_id
        self._repo = StudentVerificationRepository(session, tenant_id=tenant_id)

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    async def block_status(self, user_id: str, now: datetime | None = None) -> BlockStatus:
        """Return the user's block state.

        The state is derived from rejection history; a stored block that
        outlives the derived one (for example after a review timestamp was
        edited) still wins.
        """
        now = now or _utcnow()
        times = await self._repo.list_rejection_times(user_id, history_window_start(now))
        derived = derive_block_status(times, now)

        stored = await self._repo.get_stored_block(user_id, now)
        if stored is None or stored.blocked_until is None:
            return derived
        if derived.blocked_until is not None and derived.blocked_until >= stored.blocked_until:
            return derived
        return BlockStatus(
            is_blocked=True,
            blocked_until=stored.blocked_until,
            rejections_this_month=derived.rejections_this_month,
        )

    # ------------------------------------------------------------------
    # Submitter operations
    # ------------------------------------------------------------------

    async def submit(
        self,
        user_id: str,
        form: VerificationForm,
        document: bytes,
        filename: str,
        content_type: str | None,
    ) -> dict[str, Any]:
        """Upload the enrollment document and open a pending verification.

        Raises
        ------
        VerificationBlockedError
            If the user is inside a rejection block window.
        ConflictFailure
            If the user already has a pending verification.
        ValidationFailure
            If the document is missing, too large, or of an unsupported type.
        """
        if self._tenant_id is None:
            raise ValidationFailure("Submissions require a tenant")
        if self._storage is None:
            raise RuntimeError("StudentVerificationService.submit requires a storage backend")

        block = await self.block_status(user_id)
        if block.is_blocked and block.blocked_until is not None:
            logger.info("Submission refused for blocked user %s (until %s)", user_id, block.blocked_until)
            raise VerificationBlockedError(block.blocked_until)

        pending = await self._repo.get_pending(user_id)
        if pending is not None:
            raise ConflictFailure("A verification request is already under review")

        content_type = (content_type or "").lower()
        if not document:
            raise ValidationFailure("Document is required")
        if len(document) > MAX_DOCUMENT_BYTES:
            raise ValidationFailure("File too large. Maximum allowed size is 10MB")
        if content_type not in ALLOWED_DOCUMENT_TYPES:
            raise ValidationFailure("File type not allowed. Use PDF, JPEG, PNG or WebP")

        folder = f"{STORAGE_FOLDER}/{_folder_segment(self._tenant_id)}/{_folder_segment(user_id)}"
        storage_path = await self._storage.upload(document, filename, content_type, folder)

        try:
            row = await self._repo.create(
                tenant_id=self._tenant_id,
                user_id=user_id,
                full_name=form.full_name,
                email=form.email,
                phone=form.phone,
                institution_name=form.institution_name,
                course_name=form.course_name,
                expected_graduation_year=form.expected_graduation_year,
                document_file_name=filename,
                document_storage_path=storage_path,
                document_content_type=content_type,
                document_size=len(document),
                status=VerificationStatus.PENDING.value,
            )
        except IntegrityError as exc:
            # A concurrent submission won the pending slot.
            await self._storage.delete(storage_path)
            raise ConflictFailure("A verification request is already under review") from exc

        logger.info("Student verification submitted: %s for user %s", row.id, user_id)
        return {
            "verification_id": row.id,
            "status": row.status,
            "message": "Request submitted. The document will be reviewed shortly.",
        }

    async def get_status(self, user_id: str) -> dict[str, Any]:
        """Latest verification plus the user's block state."""
        latest = await self._repo.get_latest(user_id)
        block = await self.block_status(user_id)
        return {
            "has_verification": latest is not None,
            "verification": _summary(latest) if latest else None,
            "is_blocked": block.is_blocked,
            "blocked_until": block.blocked_until,
            "rejections_this_month": block.rejections_this_month,
            "max_rejections_allowed": MAX_REJECTIONS_PER_MONTH,
        }

    async def get_history(self, user_id: str) -> list[dict[str, Any]]:
        return [_summary(row) for row in await self._repo.list_history(user_id)]

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def list_pending(self, page: int = 1, page_size: int = 20) -> dict[str, Any]:
        """Return one page of the pending queue, oldest first."""
        rows, total, total_pages = await self._repo.list_pending(page, page_size)
        return {
            "items": [_admin_view(row) for row in rows],
            "total": total,
            "page": max(page, 1),
            "page_size": min(max(page_size, 1), 100),
            "total_pages": total_pages,
        }

    async def review(
        self,
        verification_id: str,
        *,
        approved: bool,
        reviewer_id: str,
        rejection_reason: str | None = None,
    ) -> dict[str, Any]:
        """Decide a pending verification.

        Raises
        ------
        NotFoundError
            If no verification has *verification_id*.
        ConflictFailure
            If the verification was already decided.
        """
        row = await self._repo.get(verification_id)
        if row is None:
            raise NotFoundError(f"Verification {verification_id} not found")
        if row.status != VerificationStatus.PENDING.value:
            raise ConflictFailure("This verification has already been reviewed")

        now = _utcnow()
        decided = await self._repo.decide(
            row.id,
            status=VerificationStatus.APPROVED.value if approved else VerificationStatus.REJECTED.value,
            reviewed_by=reviewer_id,
            reviewed_at=now,
            rejection_reason=None if approved else rejection_reason,
        )
        if not decided:
            # Another reviewer decided the row after it was loaded.
            raise ConflictFailure("This verification has already been reviewed")
        await self._session.refresh(row)

        if approved:
            plan = await PlanCatalog(self._session).student_plan()
            await LicenseLedger(self._session).activate_free_plan(
                row.tenant_id,
                plan.id,
                payment_method="student_verification",
            )
        else:
            await self._apply_block(row, now)

        logger.info("Verification %s reviewed: %s by %s", row.id, row.status, reviewer_id)
        return {
            "verification_id": row.id,
            "status": row.status,
            "is_blocked": row.is_blocked,
            "blocked_until": row.blocked_until,
            "message": "Verification approved" if approved else "Verification rejected",
        }

    async def _apply_block(self, row: StudentVerificationTable, reviewed_at: datetime) -> None:
        start = month_start(reviewed_at)
        scoped = StudentVerificationRepository(self._session, tenant_id=row.tenant_id)
        count = await scoped.count_rejections_between(row.user_id, start, add_months(start, 1))

        blocked_until = block_until_for_rejection(count, reviewed_at)
        if blocked_until is None:
            return
        row.is_blocked = True
        row.blocked_until = blocked_until
        await self._session.flush()
        logger.warning(
            "User %s blocked until %s after %d rejections this month",
            row.user_id,
            blocked_until.isoformat(),
            count,
        )
