"""Role-based access control.

Permissions are ``(resource, action)`` pairs in which either side may be the
wildcard ``*``. A caller's :data:`UserContext` carries its global role and,
when the request is scoped to an organization, its role in that organization.
Organization permissions only ever add to what the global role grants.

The permission tables are built once at import time and exposed as read-only
mappings of tuples, so nothing at runtime can widen a role's grants.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple, Union

from tenantauth.security.errors import AuthorizationError
from tenantauth.storage.models import OrganizationRole, Role

WILDCARD = "*"


def role_name(role: Union[str, Enum]) -> str:
    """Plain string value of a role given as an enum member or a string."""
    return role.value if isinstance(role, Enum) else role


@dataclass(frozen=True)
class Permission:
    """A grant of ``action`` on ``resource``."""

    resource: str
    action: str

    def matches(self, resource: str, action: str) -> bool:
        return self.resource in (WILDCARD, resource) and self.action in (WILDCARD, action)

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}"


def _grants(*pairs: Tuple[str, str]) -> Tuple[Permission, ...]:
    return tuple(Permission(resource, action) for resource, action in pairs)


ROLE_PERMISSIONS: Mapping[str, Tuple[Permission, ...]] = MappingProxyType(
    {
        Role.USER.value: _grants(
            ("user", "read:own"),
            ("user", "update:own"),
            ("organization", "read:own"),
            ("subscription", "read:own"),
            ("apiKey", "read:own"),
            ("apiKey", "create:own"),
            ("apiKey", "update:own"),
            ("apiKey", "delete:own"),
        ),
        Role.ADMIN.value: _grants(
            ("user", "read:all"),
            ("user", "update:all"),
            ("organization", "read:all"),
            ("organization", "update:all"),
            ("subscription", "read:all"),
            ("subscription", "update:all"),
            ("auditLog", "read:all"),
            ("apiKey", "read:all"),
            ("apiKey", "create:all"),
            ("apiKey", "update:all"),
            ("apiKey", "delete:all"),
        ),
        Role.SUPER_ADMIN.value: _grants((WILDCARD, WILDCARD)),
    }
)

ORGANIZATION_ROLE_PERMISSIONS: Mapping[str, Tuple[Permission, ...]] = MappingProxyType(
    {
        OrganizationRole.MEMBER.value: _grants(
            ("organization", "read:own"),
            ("organizationMember", "read:own"),
        ),
        OrganizationRole.ADMIN.value: _grants(
            ("organization", "read:own"),
            ("organization", "update:own"),
            ("organizationMember", "read:own"),
            ("organizationMember", "create:own"),
            ("organizationMember", "update:own"),
            ("organizationMember", "delete:own"),
            ("organizationInvite", "create:own"),
            ("organizationInvite", "read:own"),
            ("organizationInvite", "delete:own"),
        ),
        OrganizationRole.OWNER.value: _grants(
            ("organization", WILDCARD),
            ("organizationMember", WILDCARD),
            ("organizationInvite", WILDCARD),
            ("subscription", WILDCARD),
        ),
    }
)

ROLE_HIERARCHY: Mapping[str, int] = MappingProxyType(
    {
        Role.USER.value: 1,
        Role.ADMIN.value: 2,
        Role.SUPER_ADMIN.value: 3,
    }
)


def _inherit(table: Mapping[str, Tuple[Permission, ...]]) -> Mapping[str, Tuple[Permission, ...]]:
    """Give each global role the grants of every role below it."""
    ranked = sorted(ROLE_HIERARCHY, key=ROLE_HIERARCHY.__getitem__)
    effective = {}
    for index, role in enumerate(ranked):
        effective[role] = tuple(grant for lower in ranked[: index + 1] for grant in table[lower])
    return MappingProxyType(effective)


EFFECTIVE_ROLE_PERMISSIONS = _inherit(ROLE_PERMISSIONS)


@dataclass(frozen=True)
class GlobalContext:
    """Caller identity with no organization in scope."""

    user_id: str
    role: str


@dataclass(frozen=True)
class OrganizationContext:
    """Caller identity scoped to one organization they belong to."""

    user_id: str
    role: str
    organization_id: str
    organization_role: str


UserContext = Union[GlobalContext, OrganizationContext]


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of :func:`require_permission`."""

    allowed: bool
    error: Optional[AuthorizationError] = None

    def __bool__(self) -> bool:
        return self.allowed


def role_satisfies(actual: str, required: str) -> bool:
    """True when ``actual`` sits at or above ``required`` in the role hierarchy."""
    return ROLE_HIERARCHY.get(role_name(actual), 0) >= ROLE_HIERARCHY.get(role_name(required), 0)


def _any_match(grants: Iterable[Permission], resource: str, action: str) -> bool:
    return any(grant.matches(resource, action) for grant in grants)


def has_permission(context: UserContext, resource: str, action: str) -> bool:
    """Decide whether ``context`` may perform ``action`` on ``resource``.

    Args:
        context: Caller identity
        resource: Resource name, e.g. ``"apiKey"``
        action: Action name, e.g. ``"create:own"``

    Returns:
        True if the global role (or one below it), or the organization role
        when present, grants it
    """
    role = role_name(context.role)
    if role == Role.SUPER_ADMIN.value:
        return True

    if _any_match(EFFECTIVE_ROLE_PERMISSIONS.get(role, ()), resource, action):
        return True

    if isinstance(context, OrganizationContext):
        org_grants = ORGANIZATION_ROLE_PERMISSIONS.get(role_name(context.organization_role), ())
        return _any_match(org_grants, resource, action)

    return False


def require_permission(context: UserContext, resource: str, action: str) -> AuthorizationResult:
    """Enforcing counterpart of :func:`has_permission`.

    Returns a result instead of raising; callers decide how to surface the error.
    """
    if has_permission(context, resource, action):
        return AuthorizationResult(allowed=True)

    return AuthorizationResult(
        allowed=False,
        error=AuthorizationError(
            "Forbidden - Insufficient permissions",
            required=f"{resource}:{action}",
            current=role_name(context.role),
        ),
    )


def parse_permission(permission: str) -> Permission:
    """Split a ``"resource:action"`` string on its first colon.

    A bare ``"*"`` grants everything; a string with no colon names a resource
    with every action.
    """
    if permission == WILDCARD:
        return Permission(WILDCARD, WILDCARD)
    resource, sep, action = permission.partition(":")
    return Permission(resource, action if sep else WILDCARD)


def permission_matches(granted: str, resource: str, action: str) -> bool:
    """Check one API-key permission string against a required pair."""
    return parse_permission(granted).matches(resource, action)


def has_api_permission(permissions: Iterable[str], resource: str, action: str) -> bool:
    """True if any granted permission string covers ``resource``/``action``."""
    return any(permission_matches(p, resource, action) for p in permissions)


# Convenience predicates


def is_admin(context: UserContext) -> bool:
    return role_satisfies(context.role, Role.ADMIN.value)


def is_super_admin(context: UserContext) -> bool:
    return role_name(context.role) == Role.SUPER_ADMIN.value


def is_organization_owner(context: UserContext) -> bool:
    return (
        isinstance(context, OrganizationContext)
        and context.organization_role == OrganizationRole.OWNER.value
    )


def is_organization_admin(context: UserContext) -> bool:
    return isinstance(context, OrganizationContext) and context.organization_role in (
        OrganizationRole.OWNER.value,
        OrganizationRole.ADMIN.value,
    )


def can_manage_organization(context: UserContext) -> bool:
    return is_super_admin(context) or is_organization_admin(context)


def can_manage_users(context: UserContext) -> bool:
    return has_permission(context, "user", "update:all")


def can_manage_subscriptions(context: UserContext) -> bool:
    return has_permission(context, "subscription", "update:all") or (
        isinstance(context, OrganizationContext)
        and has_permission(context, "subscription", "update:own")
    )


def can_view_audit_logs(context: UserContext) -> bool:
    return has_permission(context, "auditLog", "read:all")


def can_manage_api_keys(context: UserContext, target_user_id: Optional[str] = None) -> bool:
    """Own keys need ``apiKey:*:own``; someone else's need ``apiKey:*:all``."""
    if target_user_id is None or target_user_id == context.user_id:
        return has_permission(context, "apiKey", "update:own")
    return has_permission(context, "apiKey", "update:all")
