"""
Admin user management.

Account moderation (suspend, unsuspend, ban, unban), role changes, direct
permission grants and session revocation. Every mutation is audited with
before/after snapshots; every status transition also revokes the target's
sessions through the session collaborator.

Callers are expected to have passed the access guard for the named
permission. Rules that depend on the target (self-moderation, outranking,
top-level promotions) are enforced here.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, update, func, or_, and_, desc

from admin_core.app.core.clock import Clock, utcnow
from admin_core.app.core.exceptions import (
    ConflictError,
    PermissionDeniedError,
    ResourceNotFoundError,
    ValidationError,
)
from admin_core.app.core.permissions import (
    Permission,
    TOP_ROLE_LEVEL,
    resolve_permission,
    role_level,
)
from admin_core.app.models.enums import AccountStatus, Role
from admin_core.app.models.user import User
from admin_core.app.models.user_permission import UserPermission
from admin_core.app.services.access_guard import RequestContext
from admin_core.app.services.audit import AuditAction, TargetType

logger = logging.getLogger(__name__)

TARGET_LOCK_STRIPES = 64


@dataclass
class AdminActionResult:
    user: User
    action: str
    audit_log_id: Optional[int]
    message: str


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _suspension_active(now: datetime):
    return and_(
        User.is_suspended.is_(True),
        or_(User.suspend_expires_at.is_(None), User.suspend_expires_at > now),
    )


def _one_per_target(method):
    """Hold the target's lock from the first read until the audit entry is written."""
    @functools.wraps(method)
    async def wrapper(self, admin, user_id, *args, **kwargs):
        async with self._target_lock(user_id):
            return await method(self, admin, user_id, *args, **kwargs)
    return wrapper


class UserAdminService:
    """
    Args:
        session_factory: ``async_sessionmaker``
        audit: ``AuditRecorder``
        guard: ``AccessGuard``, used for the target-dependent level checks
        sessions: session collaborator exposing ``revoke_all_sessions(user_id)``
        clock: source of "now"

    Mutations of one target run one at a time within the process (striped
    locks keyed by user id); across processes the row lock and conditional
    update in ``_transition`` decide the winner.
    """

    def __init__(self, session_factory, audit, guard, sessions, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.audit = audit
        self.guard = guard
        self.sessions = sessions
        self.clock = clock
        self._stripes = tuple(asyncio.Lock() for _ in range(TARGET_LOCK_STRIPES))

    def _target_lock(self, user_id: int) -> asyncio.Lock:
        return self._stripes[hash(user_id) % len(self._stripes)]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_users(
        self,
        status: Optional[Union[AccountStatus, str]] = None,
        role: Optional[Union[Role, str]] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        suspension_active = _suspension_active(self.clock())
        conditions = []
        if status is not None:
            status = AccountStatus(status)
            if status == AccountStatus.BANNED:
                conditions.append(User.is_banned.is_(True))
            elif status == AccountStatus.SUSPENDED:
                conditions.extend([User.is_banned.is_(False), suspension_active])
            else:
                conditions.extend([User.is_banned.is_(False), ~suspension_active])
        if role is not None:
            conditions.append(User.role == Role(role))
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(User.email.ilike(pattern), User.username.ilike(pattern)))

        count_query = select(func.count(User.id))
        list_query = select(User).order_by(desc(User.created_at), desc(User.id))
        if conditions:
            count_query = count_query.where(and_(*conditions))
            list_query = list_query.where(and_(*conditions))

        async with self.session_factory() as session:
            total = (await session.execute(count_query)).scalar() or 0
            users = (await session.execute(list_query.offset((page - 1) * limit).limit(limit))).scalars().all()
        return {"users": list(users), "total": total, "page": page, "limit": limit}

    async def get_user(self, user_id: int) -> User:
        async with self.session_factory() as session:
            return await self._load(session, user_id)

    async def _load(self, session, user_id: int, for_update: bool = False) -> User:
        if for_update:
            query = (
                select(User)
                .where(User.id == user_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            user = (await session.execute(query)).scalar_one_or_none()
        else:
            user = await session.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError("User", user_id)
        return user

    async def _transition(self, session, user: User, expected, values: Dict[str, Any], conflict: str) -> None:
        """
        Write ``values`` only while ``expected`` still holds for the stored row.

        The row lock taken by ``_load(for_update=True)`` serializes writers on
        Postgres; the conditional update catches a concurrent transition on
        backends without ``SELECT ... FOR UPDATE``. Losing the race is a
        conflict, so no audit entry or session revocation follows.
        """
        result = await session.execute(
            update(User)
            .where(User.id == user.id, expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            logger.info("Concurrent status change lost", extra={"target_id": user.id, "conflict": conflict})
            raise ConflictError(conflict)
        await session.commit()
        await session.refresh(user)

    # ------------------------------------------------------------------
    # Guards on the target
    # ------------------------------------------------------------------

    async def _ensure_can_moderate(self, admin: User, target: User, ctx: Optional[RequestContext]) -> None:
        if admin.id == target.id:
            raise ConflictError("Cannot perform this action on your own account")
        target_level = role_level(target.role)
        if target_level and target_level >= role_level(admin.role):
            decision = await self.guard.check_level(admin, target_level + 1, ctx)
            if not decision:
                raise PermissionDeniedError()

    async def _require_top_level(self, admin: User, ctx: Optional[RequestContext]) -> None:
        decision = await self.guard.check_level(admin, TOP_ROLE_LEVEL, ctx)
        if not decision:
            raise PermissionDeniedError()

    async def _finish(
        self,
        admin: User,
        target: User,
        action: str,
        before: Dict[str, Any],
        after: Dict[str, Any],
        reason: Optional[str],
        ctx: Optional[RequestContext],
        message: str,
        revoke: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AdminActionResult:
        if revoke:
            await self.sessions.revoke_all_sessions(target.id)
        ctx = ctx or RequestContext()
        audit_id = await self.audit.record(
            actor_id=admin.id,
            action=action,
            target_type=TargetType.USER,
            target_id=target.id,
            before=before,
            after=after,
            reason=reason,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            metadata={**(metadata or {}), "correlation_id": ctx.correlation_id} if ctx.correlation_id else metadata,
        )
        logger.info(message, extra={"actor_id": admin.id, "target_id": target.id, "action": action})
        return AdminActionResult(user=target, action=action, audit_log_id=audit_id, message=message)

    @staticmethod
    def _require_reason(reason: Optional[str], what: str) -> str:
        if not reason or not reason.strip():
            raise ValidationError(f"{what} reason is required", details={"field": "reason"})
        return reason.strip()

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    @_one_per_target
    async def suspend(
        self,
        admin: User,
        user_id: int,
        reason: str,
        expires_at: Optional[datetime] = None,
        ctx: Optional[RequestContext] = None,
    ) -> AdminActionResult:
        reason = self._require_reason(reason, "Suspension")
        now = self.clock()
        if expires_at is not None and expires_at <= now:
            raise ValidationError("Suspension expiry must be in the future", details={"field": "expires_at"})

        async with self.session_factory() as session:
            user = await self._load(session, user_id, for_update=True)
            await self._ensure_can_moderate(admin, user, ctx)
            if user.is_banned:
                raise ConflictError("User is banned")
            if user.is_suspension_active(now):
                raise ConflictError("User is already suspended")

            before = {
                "is_suspended": False,
                "suspend_reason": None,
                "suspend_expires_at": None,
            }
            await self._transition(
                session, user,
                and_(User.is_banned.is_(False), ~_suspension_active(now)),
                {
                    "is_suspended": True,
                    "suspend_reason": reason,
                    "suspended_at": now,
                    "suspended_by": admin.id,
                    "suspend_expires_at": expires_at,
                },
                "User is already suspended",
            )

        after = {
            "is_suspended": True,
            "suspend_reason": reason,
            "suspend_expires_at": _iso(expires_at),
        }
        return await self._finish(
            admin, user, AuditAction.USER_SUSPEND, before, after, reason, ctx,
            f"User '{user.username}' has been suspended", revoke=True,
            metadata={"expires_at": _iso(expires_at)},
        )

    @_one_per_target
    async def unsuspend(
        self,
        admin: User,
        user_id: int,
        reason: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> AdminActionResult:
        now = self.clock()
        async with self.session_factory() as session:
            user = await self._load(session, user_id, for_update=True)
            await self._ensure_can_moderate(admin, user, ctx)
            if not user.is_suspension_active(now):
                raise ConflictError("User is not suspended")

            before = {
                "is_suspended": True,
                "suspend_reason": user.suspend_reason,
                "suspend_expires_at": _iso(user.suspend_expires_at),
            }
            await self._transition(
                session, user, _suspension_active(now),
                {
                    "is_suspended": False,
                    "suspend_reason": None,
                    "suspended_at": None,
                    "suspended_by": None,
                    "suspend_expires_at": None,
                },
                "User is not suspended",
            )

        after = {"is_suspended": False, "suspend_reason": None, "suspend_expires_at": None}
        return await self._finish(
            admin, user, AuditAction.USER_UNSUSPEND, before, after, reason or "Suspension lifted", ctx,
            f"User '{user.username}' has been unsuspended", revoke=True,
        )

    @_one_per_target
    async def ban(
        self,
        admin: User,
        user_id: int,
        reason: str,
        ctx: Optional[RequestContext] = None,
    ) -> AdminActionResult:
        reason = self._require_reason(reason, "Ban")
        now = self.clock()
        async with self.session_factory() as session:
            user = await self._load(session, user_id, for_update=True)
            await self._ensure_can_moderate(admin, user, ctx)
            if user.is_banned:
                raise ConflictError("User is already banned")

            await self._transition(
                session, user, User.is_banned.is_(False),
                {"is_banned": True, "ban_reason": reason, "banned_at": now, "banned_by": admin.id},
                "User is already banned",
            )

        return await self._finish(
            admin, user, AuditAction.USER_BAN,
            {"is_banned": False},
            {"is_banned": True, "ban_reason": reason},
            reason, ctx, f"User '{user.username}' has been banned", revoke=True,
        )

    @_one_per_target
    async def unban(
        self,
        admin: User,
        user_id: int,
        reason: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> AdminActionResult:
        """Lift a ban. Reserved for the top role level."""
        await self._require_top_level(admin, ctx)
        async with self.session_factory() as session:
            user = await self._load(session, user_id, for_update=True)
            if user.id == admin.id:
                raise ConflictError("Cannot perform this action on your own account")
            if not user.is_banned:
                raise ConflictError("User is not banned")

            before = {"is_banned": True, "ban_reason": user.ban_reason}
            await self._transition(
                session, user, User.is_banned.is_(True),
                {"is_banned": False, "ban_reason": None, "banned_at": None, "banned_by": None},
                "User is not banned",
            )

        return await self._finish(
            admin, user, AuditAction.USER_UNBAN, before, {"is_banned": False, "ban_reason": None},
            reason or "Ban lifted", ctx, f"User '{user.username}' has been unbanned", revoke=True,
        )

    # ------------------------------------------------------------------
    # Roles and grants
    # ------------------------------------------------------------------

    @_one_per_target
    async def change_role(
        self,
        admin: User,
        user_id: int,
        role: Union[Role, str],
        reason: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> AdminActionResult:
        """
        Assign a new role.

        Assigning a role at or above the admin's own level is reserved for
        the top role level.
        """
        try:
            new_role = Role(role)
        except ValueError:
            raise ValidationError("Unknown role", details={"role": str(role)})

        if role_level(new_role) >= role_level(admin.role):
            await self._require_top_level(admin, ctx)

        async with self.session_factory() as session:
            user = await self._load(session, user_id, for_update=True)
            await self._ensure_can_moderate(admin, user, ctx)
            old_role = user.role
            if old_role == new_role:
                raise ConflictError(f"User already has role {new_role.value}")
            await self._transition(
                session, user, User.role == old_role, {"role": new_role},
                f"Role of user {user_id} changed concurrently",
            )

        return await self._finish(
            admin, user, AuditAction.ROLE_CHANGE, {"role": old_role.value}, {"role": new_role.value},
            reason or "Role change", ctx, f"User '{user.username}' role changed to {new_role.value}",
            revoke=False,
        )

    async def grant_permission(
        self,
        admin: User,
        user_id: int,
        permission: Union[Permission, str],
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> AdminActionResult:
        """
        Grant a permission directly, optionally until ``expires_at``.

        An admin can only hand out permissions they hold themselves.
        """
        resolved = resolve_permission(permission)
        if resolved is None:
            raise ValidationError("Unknown permission", details={"permission": str(permission)})
        now = self.clock()
        if expires_at is not None and expires_at <= now:
            raise ValidationError("Grant expiry must be in the future", details={"field": "expires_at"})

        decision = await self.guard.check(admin, resolved, ctx)
        if not decision:
            raise PermissionDeniedError()

        async with self.session_factory() as session:
            user = await self._load(session, user_id)
            await self._ensure_can_moderate(admin, user, ctx)
            existing = next((g for g in user.permissions if g.permission == resolved.value), None)
            if existing is not None and existing.is_active(now):
                before = {"permission": resolved.value, "granted": True, "expires_at": _iso(existing.expires_at)}
            else:
                before = {"permission": resolved.value, "granted": False, "expires_at": None}

            if existing is None:
                user.permissions.append(UserPermission(
                    permission=resolved.value,
                    granted_by=admin.id,
                    expires_at=expires_at,
                    created_at=now,
                ))
            else:
                existing.granted_by = admin.id
                existing.expires_at = expires_at
                existing.created_at = now
            await session.commit()
            await session.refresh(user, attribute_names=["permissions"])

        return await self._finish(
            admin, user, AuditAction.PERMISSION_GRANT, before,
            {"permission": resolved.value, "granted": True, "expires_at": _iso(expires_at)},
            reason, ctx, f"Permission {resolved.value} granted to '{user.username}'", revoke=False,
        )

    async def revoke_permission(
        self,
        admin: User,
        user_id: int,
        permission: Union[Permission, str],
        reason: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> AdminActionResult:
        name = permission.value if isinstance(permission, Permission) else str(permission)
        async with self.session_factory() as session:
            user = await self._load(session, user_id)
            await self._ensure_can_moderate(admin, user, ctx)
            grant = next((g for g in user.permissions if g.permission == name), None)
            if grant is None:
                raise ResourceNotFoundError("Permission grant", name)
            before = {"permission": name, "granted": True, "expires_at": _iso(grant.expires_at)}
            user.permissions.remove(grant)
            await session.commit()

        return await self._finish(
            admin, user, AuditAction.PERMISSION_REVOKE, before,
            {"permission": name, "granted": False, "expires_at": None},
            reason, ctx, f"Permission {name} revoked from '{user.username}'", revoke=False,
        )

    async def revoke_sessions(
        self,
        admin: User,
        user_id: int,
        reason: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> AdminActionResult:
        async with self.session_factory() as session:
            user = await self._load(session, user_id)
            await self._ensure_can_moderate(admin, user, ctx)

        return await self._finish(
            admin, user, AuditAction.USER_SESSION_REVOKE, None, None,
            reason or "Sessions revoked by admin", ctx,
            f"Sessions revoked for '{user.username}'", revoke=True,
        )

    async def active_grants(self, user: User) -> List[UserPermission]:
        return user.active_grants(self.clock())
