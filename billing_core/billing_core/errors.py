"""Error taxonomy shared by the billing core and the API layer.

Every failure raised by the ledger, the reconciler, the plan-change
orchestrator, or the verification workflow derives from
:class:`BillingError`.  The API maps each subclass to an HTTP status:

=========================  ======  ==============================================
Exception                  Status  Meaning
=========================  ======  ==============================================
AuthenticationFailure      401     Missing tenant/session or bad webhook signature
NotFoundError              404     Referenced plan/license/verification absent
ValidationFailure          400     Malformed input, unsupported document, no price
ConflictFailure            409     Decided verification, duplicate pending row
VerificationBlockedError   409     Submitter is inside a rejection block window
GatewayFailure             502     Payment processor API error (message verbatim)
=========================  ======  ==============================================
"""

from __future__ import annotations

from datetime import datetime


class BillingError(Exception):
    """Base class for all billing domain errors.

    Parameters
    ----------
    message:
        Human-readable description, safe to return to API callers.
    """

    code: str = "billing_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationFailure(BillingError):
    """Caller identity or webhook signature could not be established."""

    code = "authentication_failed"


class NotFoundError(BillingError):
    """A referenced plan, license, or verification does not exist."""

    code = "not_found"


class ValidationFailure(BillingError):
    """Input is malformed or the requested operation is not configured."""

    code = "validation_failed"


class ConflictFailure(BillingError):
    """The target record is not in a state that permits the operation."""

    code = "conflict"


class VerificationBlockedError(ConflictFailure):
    """The user exceeded the monthly rejection limit and is temporarily blocked."""

    code = "verification_blocked"

    def __init__(self, blocked_until: datetime, message: str | None = None) -> None:
        super().__init__(message or f"Verification submissions are blocked until {blocked_until.isoformat()}")
        self.blocked_until = blocked_until


class GatewayFailure(BillingError):
    """The external billing gateway rejected or failed a request.

    The processor's own message is preserved verbatim so synchronous callers
    see exactly what the gateway reported.
    """

    code = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        gateway_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.http_status = http_status
        self.gateway_code = gateway_code
