"""
Analytics endpoints.

Dashboard KPIs, metric trends, manual aggregation and exports over the
daily rollups, plus live event and security summaries.
"""

import csv
import io
from datetime import date
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from typing import Optional

from admin_core.app.core.exceptions import ConflictError, ValidationError
from admin_core.app.core.guards import require_permission, request_context
from admin_core.app.core.permissions import Permission
from admin_core.app.models.user import User
from admin_core.app.schemas.analytics import (
    AggregationResultResponse,
    BackfillResponse,
    DailyMetricRow,
    DashboardResponse,
    DateMetricsResponse,
    EventStatsResponse,
    SecuritySummaryResponse,
    TrendResponse,
)
from admin_core.app.schemas.audit import AuditLogResponse
from admin_core.app.services.audit import AuditAction, TargetType

router = APIRouter(prefix="/admin/analytics", tags=["Analytics"])

MAX_BACKFILL_DAYS = 366


def _parse_dimension(dimension: Optional[str]) -> dict:
    if not dimension:
        return {}
    key, sep, value = dimension.partition(":")
    if not sep or not key or not value:
        raise ValidationError("Dimension must look like key:value", details={"dimension": dimension})
    return {key: value}


@router.get("/dashboard", response_model=DashboardResponse)
async def dashboard(
    request: Request,
    admin: User = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    """Day-over-day KPIs from the latest aggregated day plus live moderation counts."""
    engine = request.app.state.services.analytics
    kpis = await engine.dashboard_kpis()
    realtime = await engine.realtime_snapshot()
    realtime["recent_audit_entries"] = [
        AuditLogResponse.model_validate(entry) for entry in realtime["recent_audit_entries"]
    ]
    return DashboardResponse(date=kpis["date"], kpis=kpis["kpis"], realtime=realtime)


@router.get("/trend", response_model=TrendResponse)
async def trend(
    request: Request,
    metric: str = Query(..., min_length=1, max_length=100),
    days: int = Query(30, ge=1, le=365),
    dimension: Optional[str] = Query(None, description="Optional key:value, e.g. category:housing"),
    admin: User = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    """One point per day, oldest first; days without a rollup are 0."""
    dimensions = _parse_dimension(dimension)
    points = await request.app.state.services.analytics.trend(metric, days=days, dimensions=dimensions)
    return TrendResponse(metric=metric, days=days, dimensions=dimensions, points=points)


@router.get("/metrics/{day}", response_model=DateMetricsResponse)
async def date_metrics(
    day: date,
    request: Request,
    admin: User = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    rows = await request.app.state.services.analytics.get_date_metrics(day)
    return DateMetricsResponse(date=day, metrics=[DailyMetricRow.model_validate(row) for row in rows])


@router.post("/aggregate", response_model=AggregationResultResponse)
async def aggregate(
    request: Request,
    day: Optional[date] = Query(None, alias="date", description="UTC day, defaults to yesterday"),
    admin: User = Depends(require_permission(Permission.ANALYTICS_AGGREGATE)),
):
    """
    Run the daily aggregation for one day.

    Idempotent; returns 409 while another aggregation is running.
    """
    services = request.app.state.services
    result = await services.scheduler.run_once(day)
    if result is None:
        raise ConflictError("An aggregation run is already in progress")

    ctx = request_context(request)
    await services.audit.record(
        actor_id=admin.id,
        action=AuditAction.ANALYTICS_AGGREGATE,
        target_type=TargetType.METRIC,
        target_id=result.date.isoformat(),
        after={"status": result.status, "failed": sorted(result.failed)},
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        metadata={"correlation_id": ctx.correlation_id},
    )
    return result.as_dict()


@router.post("/backfill", response_model=BackfillResponse)
async def backfill(
    request: Request,
    start: date = Query(...),
    end: date = Query(...),
    admin: User = Depends(require_permission(Permission.ANALYTICS_AGGREGATE)),
):
    """Aggregate every day from ``start`` to ``end`` inclusive, one after another."""
    if end < start:
        raise ValidationError("end must not be before start")
    if (end - start).days + 1 > MAX_BACKFILL_DAYS:
        raise ValidationError(f"Backfill is limited to {MAX_BACKFILL_DAYS} days")

    services = request.app.state.services
    results = await services.scheduler.run_backfill(start, end)
    if results is None:
        raise ConflictError("An aggregation run is already in progress")

    ctx = request_context(request)
    await services.audit.record(
        actor_id=admin.id,
        action=AuditAction.ANALYTICS_BACKFILL,
        target_type=TargetType.METRIC,
        target_id=f"{start.isoformat()}..{end.isoformat()}",
        after={"days": len(results), "statuses": {r.date.isoformat(): r.status for r in results}},
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        metadata={"correlation_id": ctx.correlation_id},
    )
    return BackfillResponse(start=start, end=end, results=[r.as_dict() for r in results])


@router.get("/export")
async def export_metrics(
    request: Request,
    metric: Optional[str] = Query(None),
    start: Optional[date] = Query(None, alias="from"),
    end: Optional[date] = Query(None, alias="to"),
    format: str = Query("json", pattern="^(json|csv)$"),
    admin: User = Depends(require_permission(Permission.ANALYTICS_EXPORT)),
):
    """Raw daily rollup rows as JSON or CSV."""
    rows = await request.app.state.services.analytics.export_rows(metric, start, end)
    if format == "json":
        return {"count": len(rows), "rows": [DailyMetricRow.model_validate(row).model_dump(mode="json") for row in rows]}

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["date", "metric_name", "metric_value", "dimensions"])
    for row in rows:
        writer.writerow([row.date.isoformat(), row.metric_name, row.metric_value, row.dimensions_key])
    filename = f"analytics-{metric or 'all'}.csv"
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/security", response_model=SecuritySummaryResponse)
async def security_summary(
    request: Request,
    days: int = Query(7, ge=1, le=90),
    admin: User = Depends(require_permission(Permission.SECURITY_VIEW)),
):
    return await request.app.state.services.events.get_security_summary(days=days)


@router.get("/events", response_model=EventStatsResponse)
async def event_stats(
    request: Request,
    days: int = Query(30, ge=1, le=365),
    admin: User = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    """Event counts and distinct users grouped by category and type."""
    stats = await request.app.state.services.events.get_event_stats(days=days)
    return EventStatsResponse(days=days, stats=stats)
