"""
Access guard for the admin area.

Decides whether an actor may perform an action. Resolution order:

1. banned actor                    -> deny, ``unauthorized_access_attempt``
2. suspended, suspension unexpired -> deny, ``suspended_access_attempt``
3. source IP outside the allow-list (when one is configured)
                                   -> deny, ``unauthorized_access_attempt``
4. permission in the role's base set          -> allow
5. unexpired direct grant for the permission  -> allow
6. anything else, including unregistered permission strings
                                   -> deny, ``permission_denied``

Every deny writes exactly one security event before returning. Allows write
nothing; auditing the permitted action is the caller's job.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Tuple, Union

from admin_core.app.core.clock import Clock, utcnow
from admin_core.app.core.exceptions import (
    AccountRestrictedError,
    PermissionDeniedError,
    RateLimitExceededError,
    StorageFailure,
)
from admin_core.app.core.permissions import (
    Permission,
    resolve_permission,
    role_has_permission,
    role_level,
)
from admin_core.app.core.rate_limiter import RateLimiter
from admin_core.app.models.enums import SecurityEventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None
    # Set when the denial comes from account state rather than missing authority.
    restricted: bool = False

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(allowed=True)

_NO_CONTEXT = RequestContext()


class AccessGuard:
    """
    Permission and level checks plus the per-actor admin rate limit.

    Args:
        events: event tracking service used to record denials
        rate_limiter: per-actor fixed-window limiter owned by this guard
        clock: used to evaluate suspension and grant expiry
        ip_allowlist: optional collection of allowed source IPs; empty disables the check
    """

    def __init__(
        self,
        events,
        rate_limiter: RateLimiter,
        clock: Clock = utcnow,
        ip_allowlist: Iterable[str] = (),
    ):
        self.events = events
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.ip_allowlist = frozenset(ip_allowlist)

    async def check(
        self,
        actor,
        permission: Union[Permission, str],
        ctx: Optional[RequestContext] = None,
    ) -> Decision:
        """Named-permission check."""
        ctx = ctx or _NO_CONTEXT
        now = self.clock()

        denied = await self._check_account(actor, now, ctx)
        if denied is not None:
            return denied

        resolved = resolve_permission(permission)
        if resolved is None:
            return await self._deny(
                actor, ctx, SecurityEventType.PERMISSION_DENIED, "unregistered_permission",
                {"permission": str(permission), "registered": False},
            )

        if role_has_permission(actor.role, resolved):
            return ALLOW

        for grant in actor.permissions:
            if grant.permission == resolved.value and grant.is_active(now):
                return ALLOW

        return await self._deny(
            actor, ctx, SecurityEventType.PERMISSION_DENIED, "missing_permission",
            {"permission": resolved.value},
        )

    async def check_level(
        self,
        actor,
        min_level: int,
        ctx: Optional[RequestContext] = None,
    ) -> Decision:
        """Coarse hierarchy check, independent of named permissions."""
        ctx = ctx or _NO_CONTEXT
        now = self.clock()

        denied = await self._check_account(actor, now, ctx)
        if denied is not None:
            return denied

        if role_level(actor.role) >= min_level:
            return ALLOW

        return await self._deny(
            actor, ctx, SecurityEventType.PERMISSION_DENIED, "insufficient_level",
            {"required_level": min_level, "actor_level": role_level(actor.role)},
        )

    async def consume_rate_limit(self, actor, ctx: Optional[RequestContext] = None) -> Tuple[bool, int, datetime]:
        """Count one admin request for ``actor``; records an event when over budget."""
        ctx = ctx or _NO_CONTEXT
        allowed, remaining, reset_at = self.rate_limiter.allow(actor.id)
        if not allowed:
            try:
                await self.events.track_rate_limit_exceeded(
                    actor.id, ctx.path or "admin", ip_address=ctx.ip_address, user_agent=ctx.user_agent,
                )
            except StorageFailure:
                logger.error("Rate limit event not recorded", extra={"actor_id": actor.id})
        return allowed, remaining, reset_at

    async def authorize(
        self,
        actor,
        ctx: Optional[RequestContext] = None,
        permission: Optional[Union[Permission, str]] = None,
        min_level: Optional[int] = None,
    ) -> Tuple[int, datetime]:
        """
        Full admin request gate: account state, permission and/or level, then rate limit.

        Raises the matching ``AppException`` on denial. Returns
        ``(remaining, reset_at)`` for the rate-limit headers.
        """
        if permission is not None:
            decision = await self.check(actor, permission, ctx)
            self._raise_for(decision)
        if min_level is not None:
            decision = await self.check_level(actor, min_level, ctx)
            self._raise_for(decision)

        allowed, remaining, reset_at = await self.consume_rate_limit(actor, ctx)
        if not allowed:
            raise RateLimitExceededError(
                retry_after=self.rate_limiter.retry_after(reset_at),
                limit=self.rate_limiter.limit,
                reset_at_iso=reset_at.isoformat(),
            )
        return remaining, reset_at

    @staticmethod
    def _raise_for(decision: Decision) -> None:
        if decision.allowed:
            return
        if decision.restricted:
            raise AccountRestrictedError()
        raise PermissionDeniedError()

    async def _check_account(self, actor, now: datetime, ctx: RequestContext) -> Optional[Decision]:
        if actor.is_banned:
            return await self._deny(
                actor, ctx, SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT, "banned",
                {"ban_reason": actor.ban_reason}, restricted=True,
            )
        if actor.is_suspension_active(now):
            return await self._deny(
                actor, ctx, SecurityEventType.SUSPENDED_ACCESS_ATTEMPT, "suspended",
                {"suspend_expires_at": actor.suspend_expires_at.isoformat() if actor.suspend_expires_at else None},
                restricted=True,
            )
        if self.ip_allowlist and ctx.ip_address not in self.ip_allowlist:
            return await self._deny(
                actor, ctx, SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT, "ip_not_allowed",
                {"ip_address": ctx.ip_address},
            )
        return None

    async def _deny(
        self,
        actor,
        ctx: RequestContext,
        event_type: SecurityEventType,
        reason: str,
        metadata: dict,
        restricted: bool = False,
    ) -> Decision:
        description = f"Admin access denied for user {actor.id}: {reason}"
        if ctx.method and ctx.path:
            description = f"{description} ({ctx.method} {ctx.path})"
        try:
            await self.events.track_security(
                event_type,
                user_id=actor.id,
                description=description,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                metadata={"reason": reason, "path": ctx.path, "correlation_id": ctx.correlation_id, **metadata},
            )
        except StorageFailure:
            logger.error(
                "Denial event not recorded",
                extra={"actor_id": actor.id, "event_type": event_type.value, "reason": reason},
            )
        logger.info("Access denied", extra={"actor_id": actor.id, "reason": reason})
        return Decision(allowed=False, reason=reason, restricted=restricted)
