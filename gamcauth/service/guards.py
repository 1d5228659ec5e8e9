from __future__ import annotations

from typing import Iterable, Optional

from gamcauth.service.errors import (
    InsufficientPermissionsError,
    NotOwnerError,
    RestrictedToOrgUnitError,
)
from gamcauth.service.pipeline import AuthContext
from gamcauth.storage.models import Role

ADMIN_ONLY = frozenset({Role.ADMIN})
INPUT_ROLES = frozenset({Role.ADMIN, Role.INPUT})
OUTPUT_ROLES = frozenset({Role.ADMIN, Role.INPUT, Role.OUTPUT})


def has_role(identity: AuthContext, allowed: Iterable[Role]) -> bool:
    return identity.role in frozenset(allowed)


def require_role(identity: AuthContext, allowed: Iterable[Role]) -> AuthContext:
    allowed_set = frozenset(allowed)
    if identity.role not in allowed_set:
        raise InsufficientPermissionsError(
            "insufficient permissions",
            detail={"required_roles": sorted(role.value for role in allowed_set)},
        )
    return identity


def require_org_unit(identity: AuthContext, allowed: Iterable[int]) -> AuthContext:
    org_unit = identity.org_unit_id
    if org_unit is None:
        raise RestrictedToOrgUnitError("user has no organizational unit")
    if org_unit not in frozenset(allowed):
        raise RestrictedToOrgUnitError("access restricted to other organizational units")
    return identity


def require_owner(identity: AuthContext, owner_id: Optional[str]) -> AuthContext:
    """Admins always pass; everyone else must own the resource."""
    if identity.role is Role.ADMIN:
        return identity
    if owner_id is None or identity.user_id != owner_id:
        raise NotOwnerError("you can only access your own resources")
    return identity


__all__ = [
    "ADMIN_ONLY",
    "INPUT_ROLES",
    "OUTPUT_ROLES",
    "has_role",
    "require_role",
    "require_org_unit",
    "require_owner",
]
