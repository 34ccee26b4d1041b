"""
Analytics Schemas.
"""

from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import date

from admin_core.app.schemas.audit import AuditLogResponse


class TrendPoint(BaseModel):
    date: date
    value: float


class TrendResponse(BaseModel):
    metric: str
    days: int
    dimensions: Dict[str, Any] = {}
    points: List[TrendPoint]


class KPIValue(BaseModel):
    value: float
    previous_value: float
    change_pct: Optional[float]
    trend: str


class RealtimeStats(BaseModel):
    suspended_users: int
    banned_users: int
    unresolved_security_events: int
    admin_actions_24h: int
    recent_audit_entries: List[AuditLogResponse]


class DashboardResponse(BaseModel):
    date: Optional[date]
    kpis: Dict[str, KPIValue]
    realtime: RealtimeStats


class AggregationResultResponse(BaseModel):
    date: date
    status: str
    succeeded: List[str]
    failed: Dict[str, str]
    skipped: List[str]
    rows_written: int
    timed_out: bool


class BackfillResponse(BaseModel):
    start: date
    end: date
    results: List[AggregationResultResponse]


class DailyMetricRow(BaseModel):
    date: date
    metric_name: str
    metric_value: float
    dimensions: Dict[str, Any]

    class Config:
        from_attributes = True


class DateMetricsResponse(BaseModel):
    date: date
    metrics: List[DailyMetricRow]


class EventStat(BaseModel):
    event_category: str
    event_type: str
    count: int
    unique_users: int


class EventStatsResponse(BaseModel):
    days: int
    stats: List[EventStat]


class SecuritySummaryResponse(BaseModel):
    days: int
    by_severity: Dict[str, int]
    by_type: List[Dict[str, Any]]
    failed_logins_by_ip: List[Dict[str, Any]]
    suspicious_ips: List[Dict[str, Any]]
    unresolved: int
