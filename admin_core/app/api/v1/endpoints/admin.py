"""
Admin API Endpoints.

User management: listing, moderation transitions, roles, direct grants
and session revocation. Every mutation is audited by the service layer.
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import Optional

from admin_core.app.core.guards import require_permission, request_context
from admin_core.app.core.permissions import Permission, role_level
from admin_core.app.models.enums import AccountStatus, Role
from admin_core.app.models.user import User
from admin_core.app.schemas.admin import (
    AdminActionResponse,
    BanUserRequest,
    ChangeRoleRequest,
    GrantPermissionRequest,
    PermissionGrantItem,
    ReasonRequest,
    SuspendUserRequest,
    UserDetail,
    UserEventItem,
    UserListItem,
    UserListResponse,
    UserTimelineResponse,
)

router = APIRouter(prefix="/admin", tags=["Admin"])


def _user_fields(user: User, now) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "status": user.status_at(now),
        "is_suspended": user.is_suspension_active(now),
        "suspend_reason": user.suspend_reason,
        "suspend_expires_at": user.suspend_expires_at,
        "is_banned": user.is_banned,
        "ban_reason": user.ban_reason,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }


def _user_detail(user: User, now) -> UserDetail:
    return UserDetail(
        **_user_fields(user, now),
        suspended_at=user.suspended_at,
        suspended_by=user.suspended_by,
        banned_at=user.banned_at,
        banned_by=user.banned_by,
        role_level=role_level(user.role),
        permissions=[PermissionGrantItem.model_validate(grant) for grant in user.active_grants(now)],
    )


def _action_response(result) -> AdminActionResponse:
    return AdminActionResponse(
        success=True,
        message=result.message,
        user_id=result.user.id,
        action=result.action,
        audit_log_id=result.audit_log_id,
    )


@router.get("/users", response_model=UserListResponse)
async def list_users(
    request: Request,
    status: Optional[AccountStatus] = Query(None, description="active, suspended or banned"),
    role: Optional[Role] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(50, ge=1, le=100, description="Items per page"),
    admin: User = Depends(require_permission(Permission.USERS_VIEW)),
):
    """
    List users with moderation status.

    Status is evaluated at request time, so an expired suspension lists as active.
    """
    services = request.app.state.services
    page_data = await services.users.list_users(status=status, role=role, search=search, page=page, limit=limit)
    now = services.clock()
    return UserListResponse(
        users=[UserListItem(**_user_fields(user, now)) for user in page_data["users"]],
        total=page_data["total"],
        page=page,
        limit=limit,
    )


@router.get("/users/{user_id}", response_model=UserDetail)
async def get_user(
    user_id: int,
    request: Request,
    admin: User = Depends(require_permission(Permission.USERS_VIEW)),
):
    services = request.app.state.services
    user = await services.users.get_user(user_id)
    return _user_detail(user, services.clock())


@router.get("/users/{user_id}/timeline", response_model=UserTimelineResponse)
async def get_user_timeline(
    user_id: int,
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(require_permission(Permission.USERS_VIEW)),
):
    """Recent activity events for a user, newest first."""
    services = request.app.state.services
    events = await services.events.get_timeline(user_id, limit=limit)
    return UserTimelineResponse(
        user_id=user_id,
        events=[UserEventItem.model_validate(event) for event in events],
    )


@router.patch("/users/{user_id}/suspend", response_model=AdminActionResponse)
async def suspend_user(
    user_id: int,
    body: SuspendUserRequest,
    request: Request,
    admin: User = Depends(require_permission(Permission.USERS_SUSPEND)),
):
    """Suspend a user, optionally until ``expires_at``, and revoke their sessions."""
    result = await request.app.state.services.users.suspend(
        admin, user_id, body.reason, expires_at=body.expires_at, ctx=request_context(request),
    )
    return _action_response(result)


@router.patch("/users/{user_id}/unsuspend", response_model=AdminActionResponse)
async def unsuspend_user(
    user_id: int,
    request: Request,
    body: Optional[ReasonRequest] = None,
    admin: User = Depends(require_permission(Permission.USERS_SUSPEND)),
):
    result = await request.app.state.services.users.unsuspend(
        admin, user_id, reason=body.reason if body else None, ctx=request_context(request),
    )
    return _action_response(result)


@router.patch("/users/{user_id}/ban", response_model=AdminActionResponse)
async def ban_user(
    user_id: int,
    body: BanUserRequest,
    request: Request,
    admin: User = Depends(require_permission(Permission.USERS_BAN)),
):
    """
    Ban a user and revoke all their sessions.

    This immediately terminates all user sessions.
    """
    result = await request.app.state.services.users.ban(
        admin, user_id, body.reason, ctx=request_context(request),
    )
    return _action_response(result)


@router.patch("/users/{user_id}/unban", response_model=AdminActionResponse)
async def unban_user(
    user_id: int,
    request: Request,
    body: Optional[ReasonRequest] = None,
    admin: User = Depends(require_permission(Permission.USERS_BAN)),
):
    """Lift a ban. Requires the top role level in addition to ``users.ban``."""
    result = await request.app.state.services.users.unban(
        admin, user_id, reason=body.reason if body else None, ctx=request_context(request),
    )
    return _action_response(result)


@router.patch("/users/{user_id}/role", response_model=AdminActionResponse)
async def change_user_role(
    user_id: int,
    body: ChangeRoleRequest,
    request: Request,
    admin: User = Depends(require_permission(Permission.ROLES_CHANGE)),
):
    result = await request.app.state.services.users.change_role(
        admin, user_id, body.role, reason=body.reason, ctx=request_context(request),
    )
    return _action_response(result)


@router.post("/users/{user_id}/permissions", response_model=AdminActionResponse)
async def grant_user_permission(
    user_id: int,
    body: GrantPermissionRequest,
    request: Request,
    admin: User = Depends(require_permission(Permission.PERMISSIONS_GRANT)),
):
    result = await request.app.state.services.users.grant_permission(
        admin, user_id, body.permission, expires_at=body.expires_at,
        reason=body.reason, ctx=request_context(request),
    )
    return _action_response(result)


@router.delete("/users/{user_id}/permissions/{permission}", response_model=AdminActionResponse)
async def revoke_user_permission(
    user_id: int,
    permission: str,
    request: Request,
    admin: User = Depends(require_permission(Permission.PERMISSIONS_GRANT)),
):
    result = await request.app.state.services.users.revoke_permission(
        admin, user_id, permission, ctx=request_context(request),
    )
    return _action_response(result)


@router.post("/users/{user_id}/revoke-sessions", response_model=AdminActionResponse)
async def revoke_user_sessions(
    user_id: int,
    request: Request,
    body: Optional[ReasonRequest] = None,
    admin: User = Depends(require_permission(Permission.USERS_REVOKE_SESSIONS)),
):
    result = await request.app.state.services.users.revoke_sessions(
        admin, user_id, reason=body.reason if body else None, ctx=request_context(request),
    )
    return _action_response(result)
