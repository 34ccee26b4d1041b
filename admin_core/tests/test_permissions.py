"""
Tests for the permission registry and the access guard.

Covers deny-by-default for unregistered permissions, role tables, direct
grants with expiry and the account-state checks that run before them.
"""

import pytest
from datetime import timedelta
from sqlalchemy import select

from admin_core.app.core.exceptions import AccountRestrictedError, PermissionDeniedError
from admin_core.app.core.permissions import (
    Permission,
    ROLE_PERMISSIONS,
    TOP_ROLE_LEVEL,
    permissions_for_role,
    resolve_permission,
    role_has_permission,
    role_level,
)
from admin_core.app.models.enums import Role, SecuritySeverity
from admin_core.app.models.security_event import SecurityEvent
from admin_core.app.models.user import User
from admin_core.app.models.user_permission import UserPermission
from admin_core.app.services.access_guard import RequestContext


def _actor(role, user_id=1, grants=None, **fields):
    values = {"is_banned": False, "is_suspended": False}
    values.update(fields)
    return User(id=user_id, username=f"actor{user_id}", email=f"actor{user_id}@test.com",
                role=role, permissions=list(grants or []), **values)


async def _security_events(db_session):
    result = await db_session.execute(select(SecurityEvent).order_by(SecurityEvent.id))
    return list(result.scalars().all())


# Registry

@pytest.mark.parametrize("role", list(Role))
def test_unregistered_permission_resolves_to_none_for_every_role(role):
    assert resolve_permission("users.teleport") is None
    assert resolve_permission("") is None
    assert "users.teleport" not in {p.value for p in permissions_for_role(role)}


def test_registered_permission_strings_resolve():
    assert resolve_permission("users.ban") is Permission.USERS_BAN
    assert resolve_permission(Permission.AUDIT_VIEW) is Permission.AUDIT_VIEW


def test_super_admin_holds_every_registered_permission():
    assert ROLE_PERMISSIONS[Role.SUPER_ADMIN] == frozenset(Permission)


def test_support_is_read_only():
    assert permissions_for_role(Role.SUPPORT) == {
        Permission.USERS_VIEW,
        Permission.PRODUCTS_VIEW,
        Permission.ANALYTICS_VIEW,
    }
    assert not role_has_permission(Role.SUPPORT, Permission.USERS_BAN)


def test_marketplace_roles_have_no_admin_permissions():
    for role in (Role.SELLER, Role.LANDLORD, Role.BUYER):
        assert permissions_for_role(role) == frozenset()
        assert role_level(role) == 0


def test_role_levels_are_ordered():
    assert role_level(Role.SUPER_ADMIN) == TOP_ROLE_LEVEL == 100
    assert role_level(Role.SUPER_ADMIN) > role_level(Role.ADMIN) > role_level(Role.MODERATOR) > role_level(Role.SUPPORT)


def test_role_table_is_read_only():
    with pytest.raises(TypeError):
        ROLE_PERMISSIONS[Role.BUYER] = frozenset({Permission.USERS_BAN})


# Access guard

@pytest.mark.asyncio
async def test_unregistered_permission_denied_even_for_super_admin(services, db_session):
    actor = _actor(Role.SUPER_ADMIN)

    decision = await services.access_guard.check(actor, "users.teleport")

    assert not decision
    assert decision.reason == "unregistered_permission"
    events = await _security_events(db_session)
    assert [e.event_type for e in events] == ["permission_denied"]
    assert events[0].meta_data["registered"] is False


@pytest.mark.asyncio
async def test_role_permission_allows_without_writing_events(services, db_session):
    decision = await services.access_guard.check(_actor(Role.ADMIN), Permission.USERS_BAN)

    assert decision
    assert await _security_events(db_session) == []


@pytest.mark.asyncio
async def test_missing_permission_records_one_high_event(services, db_session):
    ctx = RequestContext(ip_address="10.0.0.7", user_agent="pytest", path="/v1/admin/users/2/ban", method="PATCH")

    decision = await services.access_guard.check(_actor(Role.SUPPORT, user_id=7), Permission.USERS_BAN, ctx)

    assert not decision
    events = await _security_events(db_session)
    assert len(events) == 1
    assert events[0].event_type == "permission_denied"
    assert events[0].severity == SecuritySeverity.HIGH
    assert events[0].user_id == 7
    assert events[0].ip_address == "10.0.0.7"
    assert events[0].meta_data["permission"] == "users.ban"


@pytest.mark.asyncio
async def test_direct_grant_allows_until_it_expires(services, clock):
    grant = UserPermission(permission=Permission.USERS_BAN.value, expires_at=clock() + timedelta(hours=1))
    actor = _actor(Role.SUPPORT, grants=[grant])

    assert await services.access_guard.check(actor, Permission.USERS_BAN)

    clock.advance(hours=1)
    assert not await services.access_guard.check(actor, Permission.USERS_BAN)


@pytest.mark.asyncio
async def test_grant_for_other_permission_does_not_apply(services):
    grant = UserPermission(permission=Permission.AUDIT_VIEW.value, expires_at=None)
    actor = _actor(Role.SUPPORT, grants=[grant])

    assert await services.access_guard.check(actor, Permission.AUDIT_VIEW)
    assert not await services.access_guard.check(actor, Permission.USERS_BAN)


@pytest.mark.asyncio
async def test_banned_super_admin_is_restricted(services, db_session):
    actor = _actor(Role.SUPER_ADMIN, is_banned=True, ban_reason="compromised")

    decision = await services.access_guard.check(actor, Permission.USERS_VIEW)

    assert not decision
    assert decision.restricted
    events = await _security_events(db_session)
    assert [e.event_type for e in events] == ["unauthorized_access_attempt"]


@pytest.mark.asyncio
async def test_active_suspension_denies_and_expired_suspension_does_not(services, clock, db_session):
    actor = _actor(Role.ADMIN, is_suspended=True, suspend_expires_at=clock() + timedelta(minutes=30))

    decision = await services.access_guard.check(actor, Permission.USERS_VIEW)
    assert not decision and decision.restricted
    events = await _security_events(db_session)
    assert events[0].event_type == "suspended_access_attempt"
    assert events[0].severity == SecuritySeverity.MEDIUM

    clock.advance(minutes=31)
    assert await services.access_guard.check(actor, Permission.USERS_VIEW)


@pytest.mark.asyncio
async def test_ip_allowlist_blocks_other_addresses(services, db_session):
    services.access_guard.ip_allowlist = frozenset({"192.168.1.10"})
    actor = _actor(Role.SUPER_ADMIN)

    assert await services.access_guard.check(actor, Permission.USERS_VIEW, RequestContext(ip_address="192.168.1.10"))
    decision = await services.access_guard.check(actor, Permission.USERS_VIEW, RequestContext(ip_address="8.8.8.8"))

    assert not decision
    assert decision.reason == "ip_not_allowed"
    events = await _security_events(db_session)
    assert [e.event_type for e in events] == ["unauthorized_access_attempt"]


@pytest.mark.asyncio
async def test_check_level(services):
    assert await services.access_guard.check_level(_actor(Role.ADMIN), 80)
    decision = await services.access_guard.check_level(_actor(Role.ADMIN), TOP_ROLE_LEVEL)
    assert decision.reason == "insufficient_level"


@pytest.mark.asyncio
async def test_authorize_raises_matching_errors(services):
    with pytest.raises(PermissionDeniedError) as denied:
        await services.access_guard.authorize(_actor(Role.SUPPORT), permission=Permission.USERS_BAN)
    assert denied.value.message == "Access denied"
    assert "users.ban" not in denied.value.message

    with pytest.raises(AccountRestrictedError):
        await services.access_guard.authorize(_actor(Role.ADMIN, is_banned=True), permission=Permission.USERS_VIEW)

    remaining, _ = await services.access_guard.authorize(_actor(Role.ADMIN, user_id=3), permission=Permission.USERS_VIEW)
    assert remaining == services.rate_limiter.limit - 1


@pytest.mark.asyncio
async def test_denied_requests_do_not_consume_rate_limit(services):
    actor = _actor(Role.SUPPORT, user_id=11)
    with pytest.raises(PermissionDeniedError):
        await services.access_guard.authorize(actor, permission=Permission.USERS_BAN)

    remaining, _ = services.rate_limiter.peek(actor.id)
    assert remaining == services.rate_limiter.limit


@pytest.mark.asyncio
async def test_denial_survives_event_store_failure(services, mocker):
    from admin_core.app.core.exceptions import StorageFailure

    mocker.patch.object(services.events, "track_security", side_effect=StorageFailure("db down"))

    decision = await services.access_guard.check(_actor(Role.SUPPORT), Permission.USERS_BAN)

    assert not decision
    services.events.track_security.assert_awaited_once()


@pytest.mark.asyncio
async def test_denial_reports_unrecorded_event_to_notifier(clock, notifier):
    from admin_core.app.core.rate_limiter import RateLimiter
    from admin_core.app.services.access_guard import AccessGuard
    from admin_core.app.services.event_tracking import EventTrackingService

    def unreachable_database():
        raise ConnectionRefusedError("db down")

    guard = AccessGuard(
        EventTrackingService(unreachable_database, notifier, clock=clock),
        RateLimiter(limit=10, window_seconds=60, clock=clock),
        clock=clock,
    )

    decision = await guard.check(_actor(Role.SUPPORT, user_id=21), Permission.USERS_BAN,
                                 RequestContext(ip_address="10.4.4.4", correlation_id="trace-9"))

    assert not decision
    assert [alert.event_type for alert in notifier.events] == ["event_write_failure"]
    alert = notifier.events[0]
    assert alert.user_id == 21
    assert alert.meta_data["event_type"] == "permission_denied"
    assert alert.meta_data["correlation_id"] == "trace-9"
    assert alert.meta_data["error"] == "ConnectionRefusedError"
