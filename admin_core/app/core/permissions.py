"""
Permission registry.

Closed set of permission identifiers and the static role -> permission
table. The table is built once at import time and is read-only afterwards,
so lookups need no locking.

A permission string that is not part of the ``Permission`` enum resolves to
``None`` and is denied for every role.
"""

from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Union

from admin_core.app.models.enums import Role


# ============================================================
# Permissions
# ============================================================


class Permission(str, Enum):
    """All permissions known to the admin core."""

    # User management
    USERS_VIEW = "users.view"
    USERS_UPDATE = "users.update"
    USERS_DELETE = "users.delete"
    USERS_BAN = "users.ban"
    USERS_SUSPEND = "users.suspend"
    USERS_REVOKE_SESSIONS = "users.revoke_sessions"

    # Role and direct-grant management
    ROLES_VIEW = "roles.view"
    ROLES_CHANGE = "roles.change"
    PERMISSIONS_GRANT = "permissions.grant"

    # Listings
    PRODUCTS_VIEW = "products.view"
    PRODUCTS_UPDATE = "products.update"
    PRODUCTS_DELETE = "products.delete"

    # Analytics
    ANALYTICS_VIEW = "analytics.view"
    ANALYTICS_EXPORT = "analytics.export"
    ANALYTICS_AGGREGATE = "analytics.aggregate"

    # Audit and security
    AUDIT_VIEW = "audit.view"
    SECURITY_VIEW = "security.view"
    SECURITY_RESOLVE = "security.resolve"

    # System settings
    SETTINGS_VIEW = "settings.view"
    SETTINGS_UPDATE = "settings.update"
    ADMINS_MANAGE = "admins.manage"


# ============================================================
# Role hierarchy
# ============================================================


ROLE_LEVELS: Mapping[Role, int] = MappingProxyType({
    Role.SUPER_ADMIN: 100,
    Role.ADMIN: 80,
    Role.MODERATOR: 50,
    Role.SUPPORT: 30,
    Role.SELLER: 0,
    Role.LANDLORD: 0,
    Role.BUYER: 0,
})

TOP_ROLE_LEVEL = max(ROLE_LEVELS.values())


# ============================================================
# Role Permission Mappings
# ============================================================


_ROLE_PERMISSIONS = {
    Role.SUPER_ADMIN: frozenset(Permission),

    Role.ADMIN: frozenset({
        Permission.USERS_VIEW,
        Permission.USERS_UPDATE,
        Permission.USERS_BAN,
        Permission.USERS_SUSPEND,
        Permission.USERS_REVOKE_SESSIONS,
        Permission.ROLES_VIEW,
        Permission.ROLES_CHANGE,
        Permission.PRODUCTS_VIEW,
        Permission.PRODUCTS_UPDATE,
        Permission.PRODUCTS_DELETE,
        Permission.ANALYTICS_VIEW,
        Permission.ANALYTICS_EXPORT,
        Permission.ANALYTICS_AGGREGATE,
        Permission.AUDIT_VIEW,
        Permission.SECURITY_VIEW,
        Permission.SECURITY_RESOLVE,
        Permission.SETTINGS_VIEW,
    }),

    Role.MODERATOR: frozenset({
        Permission.USERS_VIEW,
        Permission.USERS_SUSPEND,
        Permission.PRODUCTS_VIEW,
        Permission.PRODUCTS_UPDATE,
        Permission.PRODUCTS_DELETE,
        Permission.SECURITY_VIEW,
    }),

    Role.SUPPORT: frozenset({
        Permission.USERS_VIEW,
        Permission.PRODUCTS_VIEW,
        Permission.ANALYTICS_VIEW,
    }),

    Role.SELLER: frozenset(),
    Role.LANDLORD: frozenset(),
    Role.BUYER: frozenset(),
}

ROLE_PERMISSIONS: Mapping[Role, FrozenSet[Permission]] = MappingProxyType(_ROLE_PERMISSIONS)


# ============================================================
# Lookups
# ============================================================


def resolve_permission(value: Union[Permission, str]) -> Optional[Permission]:
    """Map a permission string to its registered identifier, or None if unregistered."""
    if isinstance(value, Permission):
        return value
    try:
        return Permission(value)
    except ValueError:
        return None


def role_level(role: Role) -> int:
    return ROLE_LEVELS.get(role, 0)


def role_has_permission(role: Role, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def permissions_for_role(role: Role) -> FrozenSet[Permission]:
    return ROLE_PERMISSIONS.get(role, frozenset())
