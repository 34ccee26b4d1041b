"""
Security event endpoints.
"""

from datetime import datetime
from fastapi import APIRouter, Depends, Query, Request
from typing import Optional

from admin_core.app.core.guards import require_permission, request_context
from admin_core.app.core.permissions import Permission
from admin_core.app.models.enums import SecuritySeverity
from admin_core.app.models.user import User
from admin_core.app.schemas.security import (
    ResolveSecurityEventRequest,
    SecurityEventListResponse,
    SecurityEventResponse,
)
from admin_core.app.services.audit import AuditAction, TargetType

router = APIRouter(prefix="/admin/security-events", tags=["Security"])


@router.get("", response_model=SecurityEventListResponse)
async def list_security_events(
    request: Request,
    severity: Optional[SecuritySeverity] = Query(None),
    resolved: Optional[bool] = Query(None),
    user_id: Optional[int] = Query(None, alias="userId"),
    event_type: Optional[str] = Query(None, alias="eventType"),
    start: Optional[datetime] = Query(None, alias="from"),
    end: Optional[datetime] = Query(None, alias="to"),
    hours: Optional[int] = Query(None, ge=1, le=24 * 90),
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(require_permission(Permission.SECURITY_VIEW)),
):
    """Security events, newest first. Without ``from`` or ``hours`` the last 24 hours are returned."""
    if start is None and hours is None:
        hours = 24
    events = await request.app.state.services.events.get_recent_security(
        severity=severity,
        resolved=resolved,
        user_id=user_id,
        event_type=event_type,
        since=start,
        until=end,
        hours=hours,
        limit=limit,
    )
    return SecurityEventListResponse(
        events=[SecurityEventResponse.model_validate(event) for event in events],
        count=len(events),
    )


@router.patch("/{event_id}/resolve", response_model=SecurityEventResponse)
async def resolve_security_event(
    event_id: int,
    request: Request,
    body: Optional[ResolveSecurityEventRequest] = None,
    admin: User = Depends(require_permission(Permission.SECURITY_RESOLVE)),
):
    """Mark an event resolved with the resolver id, timestamp and optional notes."""
    services = request.app.state.services
    notes = body.notes if body else None
    event = await services.events.resolve_security_event(event_id, admin.id, notes=notes)

    ctx = request_context(request)
    await services.audit.record(
        actor_id=admin.id,
        action=AuditAction.SECURITY_EVENT_RESOLVE,
        target_type=TargetType.SECURITY_EVENT,
        target_id=event.id,
        before={"resolved": False},
        after={"resolved": True, "resolved_by": admin.id},
        reason=notes,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        metadata={"correlation_id": ctx.correlation_id},
    )
    return SecurityEventResponse.model_validate(event)
