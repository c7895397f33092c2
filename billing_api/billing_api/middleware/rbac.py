"""Role-based access control for billing endpoints.

Four roles, each inheriting the permissions of the roles below it:

* ``viewer`` -- read plans and the tenant's subscription.
* ``member`` -- additionally submit a student verification.
* ``owner`` -- additionally manage the tenant's subscription.
* ``admin`` -- additionally review student verifications (cross-tenant).

Usage in routers::

    @router.post("/checkout")
    async def create_checkout(
        ...,
        _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """User roles ordered by privilege level."""

    VIEWER = 0
    MEMBER = 1
    OWNER = 2
    ADMIN = 3


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a token ``role`` claim into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


class Permission(str, Enum):
    """Permission tokens checked by endpoint guards."""

    READ_BILLING = "read:billing"
    SUBMIT_VERIFICATION = "submit:verification"
    MANAGE_BILLING = "manage:billing"
    REVIEW_VERIFICATIONS = "review:verifications"


_VIEWER_PERMS: frozenset[Permission] = frozenset({Permission.READ_BILLING})
_MEMBER_PERMS: frozenset[Permission] = _VIEWER_PERMS | {Permission.SUBMIT_VERIFICATION}
_OWNER_PERMS: frozenset[Permission] = _MEMBER_PERMS | {Permission.MANAGE_BILLING}
_ADMIN_PERMS: frozenset[Permission] = _OWNER_PERMS | {Permission.REVIEW_VERIFICATIONS}

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.VIEWER: _VIEWER_PERMS,
    Role.MEMBER: _MEMBER_PERMS,
    Role.OWNER: _OWNER_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def get_user_role(request: Request) -> Role:
    """Resolve the caller's role from ``request.state.role``.

    Unauthenticated public requests get the least-privilege ``VIEWER`` role.

    Raises
    ------
    HTTPException(403)
        If the role claim value is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        return Role.VIEWER
    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(
            status_code=403,
            detail=f"Unrecognised role '{raw_role}'. Valid roles: {sorted(_ROLE_LOOKUP)}",
        )


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces *permission*.

    The resolved :class:`Role` is returned so handlers can inspect it.
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info("Permission denied: role=%s requires %s", role.name, permission.value)
            raise HTTPException(
                status_code=403,
                detail=f"Permission denied: role '{role.name.lower()}' does not have '{permission.value}' permission",
            )
        return role

    return _guard
