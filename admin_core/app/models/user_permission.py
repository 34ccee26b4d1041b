"""
Direct permission grant model.

A grant gives one actor one permission outside of their role, optionally
until ``expires_at``.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from admin_core.app.db.session import Base
from admin_core.app.core.clock import utcnow


class UserPermission(Base):
    __tablename__ = "user_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "permission", name="uq_user_permission"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    permission = Column(String(100), nullable=False)
    granted_by = Column(Integer, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def is_active(self, now) -> bool:
        return self.expires_at is None or self.expires_at > now

    def __repr__(self):
        return f"<UserPermission(user_id={self.user_id}, permission='{self.permission}')>"
