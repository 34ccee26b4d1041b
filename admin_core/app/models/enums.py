"""
Enumerations shared by models, services and schemas.

Roles, account status, event taxonomies and severities.
"""

import enum


class Role(str, enum.Enum):
    """
    Actor role enumeration.

    Roles:
        SUPER_ADMIN: Full control, the only role that may promote to itself
        ADMIN: Day-to-day platform administration
        MODERATOR: Content and account moderation
        SUPPORT: Read-mostly customer support
        SELLER / LANDLORD / BUYER: Marketplace users, no admin authority
    """
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MODERATOR = "moderator"
    SUPPORT = "support"
    SELLER = "seller"
    LANDLORD = "landlord"
    BUYER = "buyer"


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


class SecuritySeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEventType(str, enum.Enum):
    """Security event types. Severity is derived from the type, never passed in."""
    FAILED_LOGIN = "failed_login"
    PERMISSION_DENIED = "permission_denied"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_TOKEN = "invalid_token"
    BRUTE_FORCE_ATTEMPT = "brute_force_attempt"
    UNUSUAL_LOCATION = "unusual_location"
    UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"
    SUSPENDED_ACCESS_ATTEMPT = "suspended_access_attempt"
    AUDIT_WRITE_FAILURE = "audit_write_failure"
    EVENT_WRITE_FAILURE = "event_write_failure"


class EventCategory(str, enum.Enum):
    AUTH = "auth"
    PROFILE = "profile"
    PRODUCT = "product"
    MESSAGE = "message"
    FAVORITE = "favorite"
    SEARCH = "search"
    ADMIN = "admin"
    SYSTEM = "system"


class UserEventType:
    """Well-known user event type strings."""
    USER_REGISTER = "user.register"
    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"
    PASSWORD_CHANGE = "password.change"
    PROFILE_VIEW = "profile.view"
    PROFILE_UPDATE = "profile.update"
    PRODUCT_CREATE = "product.create"
    PRODUCT_VIEW = "product.view"
    PRODUCT_UPDATE = "product.update"
    PRODUCT_DELETE = "product.delete"
    MESSAGE_SEND = "message.send"
    MESSAGE_READ = "message.read"
    FAVORITE_ADD = "favorite.add"
    FAVORITE_REMOVE = "favorite.remove"
    SEARCH_QUERY = "search.query"
