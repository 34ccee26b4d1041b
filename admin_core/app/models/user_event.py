"""
User activity event model. Write-once, read-many.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index
from admin_core.app.db.session import Base


class UserEvent(Base):
    __tablename__ = "user_events"
    __table_args__ = (
        Index("ix_user_events_type_created", "event_type", "created_at"),
        Index("ix_user_events_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=True)
    event_type = Column(String(50), nullable=False)
    event_category = Column(String(30), nullable=False, index=True)
    event_data = Column(JSON, nullable=True)
    ip_address = Column(String(50), nullable=True)
    user_agent = Column(String(500), nullable=True)
    session_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<UserEvent(id={self.id}, type='{self.event_type}', user={self.user_id})>"
