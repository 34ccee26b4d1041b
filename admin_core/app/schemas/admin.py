"""
Admin API Schema Definitions.

Pydantic schemas for user management endpoints.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
from admin_core.app.models.enums import Role, AccountStatus


class PermissionGrantItem(BaseModel):
    """Schema for a direct permission grant."""
    permission: str
    granted_by: Optional[int] = None
    expires_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UserListItem(BaseModel):
    """Schema for user in list response."""
    id: int
    username: str
    email: str
    role: Role
    status: AccountStatus
    is_suspended: bool
    suspend_reason: Optional[str] = None
    suspend_expires_at: Optional[datetime] = None
    is_banned: bool
    ban_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class UserDetail(UserListItem):
    """Schema for a single user with moderation history and grants."""
    suspended_at: Optional[datetime] = None
    suspended_by: Optional[int] = None
    banned_at: Optional[datetime] = None
    banned_by: Optional[int] = None
    role_level: int
    permissions: List[PermissionGrantItem] = []


class UserListResponse(BaseModel):
    """Schema for list users response."""
    users: List[UserListItem]
    total: int
    page: int
    limit: int


class SuspendUserRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Reason for suspension (for audit log)")
    expires_at: Optional[datetime] = Field(None, description="When the suspension lifts on its own")


class BanUserRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Reason for the ban (for audit log)")


class ReasonRequest(BaseModel):
    """Schema for transitions where the reason is optional."""
    reason: Optional[str] = Field(None, description="Reason (for audit log)")


class ChangeRoleRequest(BaseModel):
    role: Role
    reason: Optional[str] = None


class GrantPermissionRequest(BaseModel):
    permission: str = Field(..., min_length=1)
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


class AdminActionResponse(BaseModel):
    """Schema for admin action response."""
    success: bool
    message: str
    user_id: int
    action: str
    audit_log_id: Optional[int]


class UserEventItem(BaseModel):
    id: int
    event_type: str
    event_category: str
    event_data: Optional[dict] = None
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UserTimelineResponse(BaseModel):
    user_id: int
    events: List[UserEventItem]
