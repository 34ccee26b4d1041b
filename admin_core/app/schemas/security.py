"""
Security event schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any
from admin_core.app.models.enums import SecuritySeverity


class SecurityEventResponse(BaseModel):
    id: int
    user_id: Optional[int]
    event_type: str
    severity: SecuritySeverity
    description: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    meta_data: Optional[Dict[str, Any]]
    resolved: bool
    resolved_by: Optional[int]
    resolved_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class SecurityEventListResponse(BaseModel):
    events: List[SecurityEventResponse]
    count: int


class ResolveSecurityEventRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)
