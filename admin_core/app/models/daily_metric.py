"""
Daily metric rollup model.

Derived data: rows can be deleted and rebuilt from raw events. The unique
key includes ``dimensions_key``, the canonical JSON of ``dimensions``, so
re-aggregating a day overwrites rather than duplicates.
"""

from sqlalchemy import Column, Integer, String, Date, Float, JSON, UniqueConstraint
from admin_core.app.db.session import Base


class DailyMetric(Base):
    __tablename__ = "analytics_daily"
    __table_args__ = (
        UniqueConstraint("date", "metric_name", "dimensions_key", name="uq_analytics_daily_metric"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    date = Column(Date, nullable=False, index=True)
    metric_name = Column(String(100), nullable=False, index=True)
    metric_value = Column(Float, nullable=False, default=0)
    dimensions = Column(JSON, nullable=False, default=dict)
    dimensions_key = Column(String(255), nullable=False, default="{}")

    def __repr__(self):
        return f"<DailyMetric(date={self.date}, metric='{self.metric_name}', value={self.metric_value})>"
