"""
Audit trail endpoints (read-only).
"""

from datetime import datetime
from fastapi import APIRouter, Depends, Query, Request
from typing import Optional

from admin_core.app.core.guards import require_permission
from admin_core.app.core.permissions import Permission
from admin_core.app.models.user import User
from admin_core.app.schemas.audit import AuditLogResponse, AuditStatsResponse, AuditTrailResponse

router = APIRouter(prefix="/admin/audit-logs", tags=["Audit"])


@router.get("", response_model=AuditTrailResponse)
async def list_audit_logs(
    request: Request,
    actor: Optional[int] = Query(None, description="Actor (admin) id"),
    action: Optional[str] = Query(None),
    target_type: Optional[str] = Query(None, alias="targetType"),
    target_id: Optional[str] = Query(None, alias="targetId"),
    start: Optional[datetime] = Query(None, alias="from"),
    end: Optional[datetime] = Query(None, alias="to", description="Exclusive upper bound"),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    admin: User = Depends(require_permission(Permission.AUDIT_VIEW)),
):
    """Audit entries matching the filters, newest first."""
    result = await request.app.state.services.audit.query(
        actor_id=actor,
        action=action,
        target_type=target_type,
        target_id=target_id,
        start=start,
        end=end,
        search=search,
        page=page,
        limit=limit,
    )
    return AuditTrailResponse(
        logs=[AuditLogResponse.model_validate(entry) for entry in result["items"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
        pages=result["pages"],
    )


@router.get("/stats", response_model=AuditStatsResponse)
async def audit_stats(
    request: Request,
    days: int = Query(30, ge=1, le=365),
    admin: User = Depends(require_permission(Permission.AUDIT_VIEW)),
):
    return await request.app.state.services.audit.stats(days=days)


@router.get("/actors/{actor_id}/timeline", response_model=AuditTrailResponse)
async def actor_timeline(
    actor_id: int,
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(require_permission(Permission.AUDIT_VIEW)),
):
    """Everything one admin did, newest first."""
    entries = await request.app.state.services.audit.actor_timeline(actor_id, limit=limit)
    return AuditTrailResponse(
        logs=[AuditLogResponse.model_validate(entry) for entry in entries],
        total=len(entries),
        page=1,
        limit=limit,
        pages=1,
    )
