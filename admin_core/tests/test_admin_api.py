"""
Integration tests for the admin API.

Tests the full request path: token resolution, session revocation, the
access guard, rate limiting, the audit trail and the read endpoints.
"""

import pytest
from datetime import timedelta
from sqlalchemy import select

from admin_core.app.models.audit_log import AuditLog
from admin_core.app.models.enums import Role, SecuritySeverity
from admin_core.app.models.security_event import SecurityEvent


async def _security_events(db_session, event_type=None):
    query = select(SecurityEvent).order_by(SecurityEvent.id)
    if event_type:
        query = query.where(SecurityEvent.event_type == event_type)
    return list((await db_session.execute(query)).scalars().all())


async def _audit_entries(db_session, action=None):
    query = select(AuditLog).order_by(AuditLog.id)
    if action:
        query = query.where(AuditLog.action == action)
    return list((await db_session.execute(query)).scalars().all())


@pytest.fixture
async def super_admin(make_user):
    return await make_user("root", Role.SUPER_ADMIN)


@pytest.fixture
async def admin(make_user):
    return await make_user("admin", Role.ADMIN)


@pytest.fixture
async def support(make_user):
    return await make_user("helpdesk", Role.SUPPORT)


@pytest.fixture
async def member(make_user):
    return await make_user("member", Role.BUYER)


# TEST 1: Deny path

@pytest.mark.asyncio
async def test_support_cannot_ban(client, auth, support, member, db_session):
    """Denied: 403 with a generic message, one high event, no audit entry, target untouched."""
    response = await client.patch(
        f"/v1/admin/users/{member.id}/ban",
        headers=auth(support),
        json={"reason": "fraud"},
    )

    assert response.status_code == 403
    assert response.json()["message"] == "Access denied"
    assert "users.ban" not in response.text

    events = await _security_events(db_session)
    assert len(events) == 1
    assert events[0].event_type == "permission_denied"
    assert events[0].severity == SecuritySeverity.HIGH
    assert events[0].user_id == support.id

    assert await _audit_entries(db_session) == []
    await db_session.refresh(member)
    assert member.is_banned is False


# TEST 2: Ban flow

@pytest.mark.asyncio
async def test_super_admin_bans_user(client, auth, super_admin, member, revoker, mocker, db_session):
    member_headers = auth(member)
    spy = mocker.spy(revoker, "revoke_all_sessions")

    response = await client.patch(
        f"/v1/admin/users/{member.id}/ban",
        headers=auth(super_admin),
        json={"reason": "fraud"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["action"] == "user.ban"
    assert response.headers["X-RateLimit-Limit"] == "100"
    assert response.headers["X-RateLimit-Remaining"] == "99"
    assert "X-RateLimit-Reset" in response.headers

    spy.assert_called_once_with(member.id)

    entries = await _audit_entries(db_session, "user.ban")
    assert len(entries) == 1
    entry = entries[0]
    assert entry.id == body["audit_log_id"]
    assert entry.actor_id == super_admin.id
    assert entry.target_type == "user"
    assert entry.target_id == str(member.id)
    assert entry.before_state == {"is_banned": False}
    assert entry.after_state == {"is_banned": True, "ban_reason": "fraud"}
    assert entry.reason == "fraud"

    await db_session.refresh(member)
    assert member.is_banned is True
    assert member.banned_by == super_admin.id

    # Tokens issued before the ban no longer resolve.
    revoked = await client.get("/v1/admin/users", headers=member_headers)
    assert revoked.status_code == 401
    assert revoked.json()["error_code"] == "ERR_AUTH_002"


@pytest.mark.asyncio
async def test_ban_requires_reason(client, auth, super_admin, member):
    response = await client.patch(
        f"/v1/admin/users/{member.id}/ban", headers=auth(super_admin), json={"reason": ""},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_cannot_ban_self_or_twice(client, auth, super_admin, member):
    own = await client.patch(
        f"/v1/admin/users/{super_admin.id}/ban", headers=auth(super_admin), json={"reason": "oops"},
    )
    assert own.status_code == 409

    first = await client.patch(f"/v1/admin/users/{member.id}/ban", headers=auth(super_admin), json={"reason": "spam"})
    second = await client.patch(f"/v1/admin/users/{member.id}/ban", headers=auth(super_admin), json={"reason": "spam"})
    assert first.status_code == 200
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_admin_cannot_ban_higher_role(client, auth, admin, super_admin, db_session):
    response = await client.patch(
        f"/v1/admin/users/{super_admin.id}/ban", headers=auth(admin), json={"reason": "coup"},
    )

    assert response.status_code == 403
    assert [e.event_type for e in await _security_events(db_session)] == ["permission_denied"]


@pytest.mark.asyncio
async def test_unban_is_reserved_for_top_level(client, auth, admin, super_admin, member):
    await client.patch(f"/v1/admin/users/{member.id}/ban", headers=auth(super_admin), json={"reason": "spam"})

    by_admin = await client.patch(f"/v1/admin/users/{member.id}/unban", headers=auth(admin))
    assert by_admin.status_code == 403

    by_root = await client.patch(
        f"/v1/admin/users/{member.id}/unban", headers=auth(super_admin), json={"reason": "appeal accepted"},
    )
    assert by_root.status_code == 200
    assert by_root.json()["action"] == "user.unban"


# TEST 3: Restricted actors

@pytest.mark.asyncio
async def test_banned_admin_is_restricted(client, auth, make_user, member, db_session):
    banned_admin = await make_user("fallen", Role.ADMIN, is_banned=True, ban_reason="compromised")

    response = await client.get("/v1/admin/users", headers=auth(banned_admin))

    assert response.status_code == 403
    assert response.json()["error_code"] == "ERR_PERM_002"
    events = await _security_events(db_session)
    assert [e.event_type for e in events] == ["unauthorized_access_attempt"]


@pytest.mark.asyncio
async def test_suspended_admin_is_restricted_until_expiry(client, auth, make_user, clock, db_session):
    suspended = await make_user(
        "benched", Role.ADMIN, is_suspended=True, suspend_expires_at=clock() + timedelta(hours=2),
    )
    headers = auth(suspended)

    response = await client.get("/v1/admin/users", headers=headers)
    assert response.status_code == 403
    assert [e.event_type for e in await _security_events(db_session)] == ["suspended_access_attempt"]

    clock.advance(hours=3)
    assert (await client.get("/v1/admin/users", headers=headers)).status_code == 200


# TEST 4: Identity

@pytest.mark.asyncio
async def test_missing_token_is_rejected(client):
    response = await client.get("/v1/admin/users")
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_invalid_token_is_rejected_and_recorded(client, db_session):
    response = await client.get("/v1/admin/users", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    events = await _security_events(db_session)
    assert [(e.event_type, e.severity) for e in events] == [("invalid_token", SecuritySeverity.LOW)]


@pytest.mark.asyncio
async def test_explicit_session_revocation(client, auth, super_admin, admin):
    admin_headers = auth(admin)
    response = await client.post(f"/v1/admin/users/{admin.id}/revoke-sessions", headers=auth(super_admin))

    assert response.status_code == 200
    assert (await client.get("/v1/admin/users", headers=admin_headers)).status_code == 401


# TEST 5: Rate limiting

@pytest.mark.asyncio
async def test_rate_limit_returns_429(client, auth, services, admin, db_session):
    services.rate_limiter.limit = 2
    headers = auth(admin)

    assert (await client.get("/v1/admin/users", headers=headers)).status_code == 200
    second = await client.get("/v1/admin/users", headers=headers)
    assert second.headers["X-RateLimit-Remaining"] == "0"

    third = await client.get("/v1/admin/users", headers=headers)
    assert third.status_code == 429
    assert third.headers["Retry-After"] == "60"
    assert third.headers["X-RateLimit-Remaining"] == "0"
    assert third.json()["error_code"] == "ERR_RATE_001"

    events = await _security_events(db_session, "rate_limit_exceeded")
    assert len(events) == 1
    assert events[0].user_id == admin.id


# TEST 6: Suspension

@pytest.mark.asyncio
async def test_suspend_requires_reason(client, auth, admin, member):
    response = await client.patch(f"/v1/admin/users/{member.id}/suspend", headers=auth(admin), json={})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_suspend_with_expiry_then_lapse(client, auth, admin, member, clock):
    expires = (clock() + timedelta(days=1)).isoformat()
    response = await client.patch(
        f"/v1/admin/users/{member.id}/suspend",
        headers=auth(admin),
        json={"reason": "cooling off", "expires_at": expires},
    )
    assert response.status_code == 200

    suspended = await client.get("/v1/admin/users", headers=auth(admin), params={"status": "suspended"})
    assert [u["id"] for u in suspended.json()["users"]] == [member.id]

    clock.advance(days=1, seconds=1)
    detail = await client.get(f"/v1/admin/users/{member.id}", headers=auth(admin))
    assert detail.json()["status"] == "active"
    assert detail.json()["is_suspended"] is False


@pytest.mark.asyncio
async def test_suspension_in_the_past_is_rejected(client, auth, admin, member, clock):
    response = await client.patch(
        f"/v1/admin/users/{member.id}/suspend",
        headers=auth(admin),
        json={"reason": "late", "expires_at": (clock() - timedelta(hours=1)).isoformat()},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_expired_suspension_lists_as_active(client, auth, admin, make_user, clock):
    lapsed = await make_user("lapsed", is_suspended=True, suspend_reason="old",
                             suspend_expires_at=clock() - timedelta(hours=1))

    response = await client.get(f"/v1/admin/users/{lapsed.id}", headers=auth(admin))

    assert response.status_code == 200
    assert response.json()["status"] == "active"


@pytest.mark.asyncio
async def test_unsuspend_audits_previous_state(client, auth, admin, member, db_session):
    await client.patch(f"/v1/admin/users/{member.id}/suspend", headers=auth(admin), json={"reason": "spam"})
    response = await client.patch(f"/v1/admin/users/{member.id}/unsuspend", headers=auth(admin))

    assert response.status_code == 200
    entry = (await _audit_entries(db_session, "user.unsuspend"))[0]
    assert entry.before_state["suspend_reason"] == "spam"
    assert entry.after_state == {"is_suspended": False, "suspend_reason": None, "suspend_expires_at": None}


# TEST 7: Roles and grants

@pytest.mark.asyncio
async def test_role_promotion_to_own_level_needs_top_level(client, auth, admin, super_admin, member, db_session):
    denied = await client.patch(f"/v1/admin/users/{member.id}/role", headers=auth(admin), json={"role": "admin"})
    assert denied.status_code == 403

    allowed = await client.patch(
        f"/v1/admin/users/{member.id}/role", headers=auth(super_admin), json={"role": "moderator"},
    )
    assert allowed.status_code == 200
    entry = (await _audit_entries(db_session, "role.change"))[0]
    assert entry.before_state == {"role": "buyer"}
    assert entry.after_state == {"role": "moderator"}


@pytest.mark.asyncio
async def test_direct_grant_lets_support_ban(client, auth, super_admin, support, member, clock):
    grant = await client.post(
        f"/v1/admin/users/{support.id}/permissions",
        headers=auth(super_admin),
        json={"permission": "users.ban", "expires_at": (clock() + timedelta(hours=1)).isoformat()},
    )
    assert grant.status_code == 200

    detail = await client.get(f"/v1/admin/users/{support.id}", headers=auth(super_admin))
    assert [p["permission"] for p in detail.json()["permissions"]] == ["users.ban"]

    ban = await client.patch(f"/v1/admin/users/{member.id}/ban", headers=auth(support), json={"reason": "fraud"})
    assert ban.status_code == 200

    revoke = await client.delete(f"/v1/admin/users/{support.id}/permissions/users.ban", headers=auth(super_admin))
    assert revoke.status_code == 200


@pytest.mark.asyncio
async def test_grant_of_unknown_permission_is_rejected(client, auth, super_admin, support):
    response = await client.post(
        f"/v1/admin/users/{support.id}/permissions",
        headers=auth(super_admin),
        json={"permission": "users.teleport"},
    )
    assert response.status_code == 422


# TEST 8: Read endpoints

@pytest.mark.asyncio
async def test_user_listing_filters(client, auth, admin, member, make_user):
    await make_user("seller1", Role.SELLER)

    response = await client.get("/v1/admin/users", headers=auth(admin), params={"role": "seller"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["users"][0]["username"] == "seller1"

    search = await client.get("/v1/admin/users", headers=auth(admin), params={"search": "memb"})
    assert [u["id"] for u in search.json()["users"]] == [member.id]


@pytest.mark.asyncio
async def test_unknown_user_is_404(client, auth, admin):
    response = await client.get("/v1/admin/users/9999", headers=auth(admin))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_user_timeline(client, auth, services, admin, member):
    await services.events.track_login(member.id, ip_address="10.0.0.1")
    await services.events.flush()

    response = await client.get(f"/v1/admin/users/{member.id}/timeline", headers=auth(admin))

    assert response.status_code == 200
    assert [e["event_type"] for e in response.json()["events"]] == ["user.login"]


@pytest.mark.asyncio
async def test_audit_log_endpoints(client, auth, super_admin, member):
    await client.patch(f"/v1/admin/users/{member.id}/ban", headers=auth(super_admin), json={"reason": "fraud"})

    logs = await client.get(
        "/v1/admin/audit-logs", headers=auth(super_admin), params={"action": "user.ban", "targetId": member.id},
    )
    assert logs.status_code == 200
    assert logs.json()["total"] == 1
    assert logs.json()["logs"][0]["after_state"]["ban_reason"] == "fraud"

    stats = await client.get("/v1/admin/audit-logs/stats", headers=auth(super_admin))
    assert stats.json()["by_action"] == [{"action": "user.ban", "count": 1}]

    timeline = await client.get(f"/v1/admin/audit-logs/actors/{super_admin.id}/timeline", headers=auth(super_admin))
    assert timeline.json()["total"] == 1


@pytest.mark.asyncio
async def test_security_events_list_and_resolve(client, auth, services, super_admin, db_session):
    event = await services.events.track_permission_denied(55, "users", "ban", ip_address="10.9.9.9")

    listing = await client.get("/v1/admin/security-events", headers=auth(super_admin), params={"severity": "high"})
    assert listing.status_code == 200
    assert [e["id"] for e in listing.json()["events"]] == [event.id]

    resolved = await client.patch(
        f"/v1/admin/security-events/{event.id}/resolve",
        headers=auth(super_admin),
        json={"notes": "test account"},
    )
    assert resolved.status_code == 200
    assert resolved.json()["resolved"] is True
    assert resolved.json()["resolved_by"] == super_admin.id

    again = await client.patch(f"/v1/admin/security-events/{event.id}/resolve", headers=auth(super_admin))
    assert again.status_code == 409

    assert len(await _audit_entries(db_session, "security.event_resolve")) == 1


@pytest.mark.asyncio
async def test_analytics_endpoints(client, auth, services, admin, member, clock):
    await services.events.track_product_view(member.id, product_id=1)
    await services.events.flush()
    day = clock().date().isoformat()

    aggregate = await client.post("/v1/admin/analytics/aggregate", headers=auth(admin), params={"date": day})
    assert aggregate.status_code == 200
    assert aggregate.json()["status"] == "success"

    trend = await client.get(
        "/v1/admin/analytics/trend", headers=auth(admin), params={"metric": "product_views", "days": 3},
    )
    assert [p["value"] for p in trend.json()["points"]] == [0.0, 0.0, 1.0]

    dashboard = await client.get("/v1/admin/analytics/dashboard", headers=auth(admin))
    assert dashboard.status_code == 200
    assert dashboard.json()["kpis"]["product_views"]["trend"] == "new"
    assert dashboard.json()["realtime"]["admin_actions_24h"] == 1

    export = await client.get(
        "/v1/admin/analytics/export", headers=auth(admin), params={"metric": "product_views", "format": "csv"},
    )
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert export.text.splitlines()[0] == "date,metric_name,metric_value,dimensions"

    bad_range = await client.post(
        "/v1/admin/analytics/backfill", headers=auth(admin), params={"start": day, "end": "2026-01-01"},
    )
    assert bad_range.status_code == 422


@pytest.mark.asyncio
async def test_support_can_view_analytics_but_not_aggregate(client, auth, support):
    assert (await client.get("/v1/admin/analytics/dashboard", headers=auth(support))).status_code == 200
    assert (await client.post("/v1/admin/analytics/aggregate", headers=auth(support))).status_code == 403


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["redis"] is True


@pytest.mark.asyncio
async def test_correlation_id_reaches_audit_and_security_records(client, auth, super_admin, support, member, db_session):
    headers = {**auth(super_admin), "X-Correlation-ID": "trace-123"}
    response = await client.patch(f"/v1/admin/users/{member.id}/ban", headers=headers, json={"reason": "fraud"})

    assert response.headers["X-Correlation-ID"] == "trace-123"
    entry = (await _audit_entries(db_session, "user.ban"))[0]
    assert entry.meta_data["correlation_id"] == "trace-123"

    denied = await client.get(
        "/v1/admin/audit-logs", headers={**auth(support), "X-Correlation-ID": "trace-456"},
    )
    assert denied.status_code == 403
    event = (await _security_events(db_session, "permission_denied"))[0]
    assert event.meta_data["correlation_id"] == "trace-456"
