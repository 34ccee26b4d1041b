"""
Audit Log Database Model.

Append-only record of admin actions with before/after snapshots.
Rows are inserted by the audit recorder and never updated or deleted.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Index
from admin_core.app.db.session import Base


class AuditLog(Base):
    """
    Audit log entry for one admin-triggered state change.

    Actions use dotted names such as ``user.ban`` or ``permission.grant``
    (see ``AuditAction``). Snapshots are stored after redaction.
    """
    __tablename__ = "admin_audit_logs"
    __table_args__ = (
        Index("ix_admin_audit_logs_target", "target_type", "target_id"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)

    action = Column(String(100), nullable=False, index=True)

    target_type = Column(String(50), nullable=True)
    target_id = Column(String(100), nullable=True)

    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)

    ip_address = Column(String(50), nullable=True)
    user_agent = Column(String(500), nullable=True)

    meta_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_id}, target={self.target_type}:{self.target_id})>"
