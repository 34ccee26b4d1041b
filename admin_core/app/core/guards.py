"""
Admin access guards.

Dependency factories that run the access guard for an endpoint: identity,
then ban/suspend, then permission (or hierarchy level), then rate limit.
Successful requests carry the rate-limit headers.
"""

from typing import Optional, Union
from fastapi import Depends, Request, Response
from admin_core.app.core.dependencies import get_current_actor, client_ip
from admin_core.app.core.permissions import Permission
from admin_core.app.models.user import User
from admin_core.app.services.access_guard import RequestContext


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        path=request.url.path,
        method=request.method,
        correlation_id=getattr(request.state, "correlation_id", None),
    )


async def _authorize(
    request: Request,
    response: Response,
    actor: User,
    permission: Optional[Union[Permission, str]] = None,
    min_level: Optional[int] = None,
) -> User:
    guard = request.app.state.services.access_guard
    remaining, reset_at = await guard.authorize(
        actor, request_context(request), permission=permission, min_level=min_level,
    )
    response.headers["X-RateLimit-Limit"] = str(guard.rate_limiter.limit)
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    response.headers["X-RateLimit-Reset"] = reset_at.isoformat()
    return actor


def require_permission(permission: Union[Permission, str]):
    """
    Dependency factory for named-permission endpoints.

    Usage:
        @router.patch("/users/{user_id}/ban")
        async def ban_user(admin: User = Depends(require_permission(Permission.USERS_BAN))):
            ...

    Raises:
        AccountRestrictedError 403 for banned or suspended actors
        PermissionDeniedError 403 otherwise denied
        RateLimitExceededError 429 when over the admin request budget
    """
    async def permission_checker(
        request: Request,
        response: Response,
        actor: User = Depends(get_current_actor),
    ) -> User:
        return await _authorize(request, response, actor, permission=permission)

    return permission_checker


def require_level(min_level: int):
    """Dependency factory for endpoints gated by role hierarchy level."""
    async def level_checker(
        request: Request,
        response: Response,
        actor: User = Depends(get_current_actor),
    ) -> User:
        return await _authorize(request, response, actor, min_level=min_level)

    return level_checker
