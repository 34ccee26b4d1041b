"""
Audit trail schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List, Dict, Any


class AuditLogResponse(BaseModel):
    """Schema for audit log entry."""
    id: int
    actor_id: Optional[int]
    action: str
    target_type: Optional[str]
    target_id: Optional[str]
    before_state: Optional[Dict[str, Any]]
    after_state: Optional[Dict[str, Any]]
    reason: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    meta_data: Optional[Dict[str, Any]]
    created_at: datetime

    class Config:
        from_attributes = True


class AuditTrailResponse(BaseModel):
    """Schema for a page of audit entries."""
    logs: List[AuditLogResponse]
    total: int
    page: int
    limit: int
    pages: int


class CountByActor(BaseModel):
    actor_id: Optional[int]
    count: int


class CountByAction(BaseModel):
    action: str
    count: int


class DailyCount(BaseModel):
    date: str
    count: int


class AuditStatsResponse(BaseModel):
    days: int
    by_actor: List[CountByActor]
    by_action: List[CountByAction]
    daily: List[DailyCount]
