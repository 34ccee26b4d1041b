"""
User database model.

Holds the parts of a marketplace account that the admin core owns: role,
suspension and ban state. Credentials live upstream.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum, Text
from sqlalchemy.orm import relationship
from admin_core.app.db.session import Base
from admin_core.app.core.clock import utcnow
from admin_core.app.models.enums import Role, AccountStatus
from admin_core.app.models.user_permission import UserPermission


class User(Base):
    """
    Actor model for authorization and account moderation.

    Status is derived rather than stored: a ban wins over a suspension, and
    a suspension whose ``suspend_expires_at`` has passed reads as active
    without any write.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(100), unique=True, index=True, nullable=False)

    role = Column(Enum(Role), default=Role.BUYER, nullable=False, index=True)

    # Suspension
    is_suspended = Column(Boolean, default=False, nullable=False)
    suspend_reason = Column(Text, nullable=True)
    suspended_at = Column(DateTime, nullable=True)
    suspended_by = Column(Integer, nullable=True)
    suspend_expires_at = Column(DateTime, nullable=True)

    # Ban
    is_banned = Column(Boolean, default=False, nullable=False, index=True)
    ban_reason = Column(Text, nullable=True)
    banned_at = Column(DateTime, nullable=True)
    banned_by = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    permissions = relationship(
        UserPermission,
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by=UserPermission.id,
    )

    def is_suspension_active(self, now) -> bool:
        if not self.is_suspended:
            return False
        return self.suspend_expires_at is None or self.suspend_expires_at > now

    def status_at(self, now) -> AccountStatus:
        if self.is_banned:
            return AccountStatus.BANNED
        if self.is_suspension_active(now):
            return AccountStatus.SUSPENDED
        return AccountStatus.ACTIVE

    def active_grants(self, now) -> list:
        return [grant for grant in self.permissions if grant.is_active(now)]

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', role='{self.role.value}')>"
