"""
Security event model.

Written once when a security-relevant fact occurs. Only the resolution
columns change afterwards.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Text, Enum, Index
from admin_core.app.db.session import Base
from admin_core.app.models.enums import SecuritySeverity


class SecurityEvent(Base):
    __tablename__ = "security_events"
    __table_args__ = (
        Index("ix_security_events_identity", "identity_key", "event_type", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, index=True)

    # user:<id> or ip:<address>; groups events for burst detection
    identity_key = Column(String(120), nullable=True)

    event_type = Column(String(50), nullable=False, index=True)
    severity = Column(Enum(SecuritySeverity), nullable=False, index=True)
    description = Column(Text, nullable=True)

    ip_address = Column(String(50), nullable=True)
    user_agent = Column(String(500), nullable=True)
    meta_data = Column(JSON, nullable=True)

    resolved = Column(Boolean, default=False, nullable=False, index=True)
    resolved_by = Column(Integer, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<SecurityEvent(id={self.id}, type='{self.event_type}', severity='{self.severity.value}')>"
