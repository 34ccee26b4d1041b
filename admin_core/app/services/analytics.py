"""
Analytics aggregation engine.

Rolls raw user and security events into per-day metrics stored in
``analytics_daily``, and answers trend and KPI queries over the rollups.
Each metric is computed and written in its own transaction, so one failing
metric does not stop the rest of the run.
"""

import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, func, and_, desc
from sqlalchemy.dialects import postgresql, sqlite

from admin_core.app.core.clock import Clock, utcnow, day_bounds
from admin_core.app.core.exceptions import AggregationFailure
from admin_core.app.models.audit_log import AuditLog
from admin_core.app.models.daily_metric import DailyMetric
from admin_core.app.models.enums import SecurityEventType, SecuritySeverity, UserEventType
from admin_core.app.models.security_event import SecurityEvent
from admin_core.app.models.user import User
from admin_core.app.models.user_event import UserEvent

logger = logging.getLogger(__name__)


class Metric:
    """Metric names written by ``aggregate_day``."""
    DAU = "dau"
    NEW_USERS = "new_users"
    NEW_LISTINGS = "new_listings"
    PRODUCT_VIEWS = "product_views"
    MESSAGES_SENT = "messages_sent"
    NEW_FAVORITES = "new_favorites"
    SEARCH_QUERIES = "search_queries"
    UNIQUE_SEARCHERS = "unique_searchers"
    ACTIVE_USERS_30D = "active_users_30d"
    FAILED_LOGINS = "failed_logins"
    SECURITY_EVENTS = "security_events"
    CRITICAL_SECURITY_EVENTS = "critical_security_events"
    VIEW_TO_MESSAGE_RATE = "view_to_message_rate"
    VIEW_TO_FAVORITE_RATE = "view_to_favorite_rate"
    FUNNEL_VIEWERS = "funnel_viewers"
    FUNNEL_FAVORITERS = "funnel_favoriters"
    FUNNEL_INQUIRERS = "funnel_inquirers"


KPI_METRICS = (
    Metric.DAU,
    Metric.NEW_USERS,
    Metric.NEW_LISTINGS,
    Metric.PRODUCT_VIEWS,
    Metric.MESSAGES_SENT,
    Metric.SEARCH_QUERIES,
    Metric.ACTIVE_USERS_30D,
    Metric.VIEW_TO_MESSAGE_RATE,
)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

# (value, dimensions)
MetricRows = List[Tuple[float, Dict[str, Any]]]


def dimensions_key(dimensions: Optional[Dict[str, Any]]) -> str:
    """Canonical JSON used in the unique key, independent of insertion order."""
    return json.dumps(dimensions or {}, sort_keys=True, separators=(",", ":"))


def percent(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


def percent_change(current: float, previous: float) -> Tuple[Optional[float], str]:
    """Day-over-day change. A zero previous value has no defined percentage."""
    if previous == 0:
        return None, ("new" if current > 0 else "flat")
    change = round((current - previous) / previous * 100, 2)
    if change > 0:
        return change, "up"
    if change < 0:
        return change, "down"
    return change, "flat"


@dataclass
class AggregationResult:
    date: date
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    rows_written: int = 0
    timed_out: bool = False

    @property
    def status(self) -> str:
        if not self.failed and not self.skipped:
            return STATUS_SUCCESS
        if not self.succeeded:
            return STATUS_FAILED
        return STATUS_PARTIAL

    def as_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "status": self.status,
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
            "rows_written": self.rows_written,
            "timed_out": self.timed_out,
        }


class AggregationEngine:
    """
    Daily metric rollups and queries.

    Args:
        session_factory: ``async_sessionmaker`` for reads and upserts
        clock: supplies "today" for trends and realtime figures
    """

    def __init__(self, session_factory, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock
        self.metrics: List[Tuple[str, Callable[[Any, datetime, datetime], Awaitable[MetricRows]]]] = [
            (Metric.DAU, self._dau),
            (Metric.NEW_USERS, self._new_users),
            (Metric.NEW_LISTINGS, self._new_listings),
            (Metric.PRODUCT_VIEWS, self._event_counter(UserEventType.PRODUCT_VIEW)),
            (Metric.MESSAGES_SENT, self._event_counter(UserEventType.MESSAGE_SEND)),
            (Metric.NEW_FAVORITES, self._event_counter(UserEventType.FAVORITE_ADD)),
            (Metric.SEARCH_QUERIES, self._event_counter(UserEventType.SEARCH_QUERY)),
            (Metric.UNIQUE_SEARCHERS, self._distinct_users(UserEventType.SEARCH_QUERY)),
            (Metric.ACTIVE_USERS_30D, self._active_users_30d),
            (Metric.FAILED_LOGINS, self._failed_logins),
            (Metric.SECURITY_EVENTS, self._security_events),
            (Metric.CRITICAL_SECURITY_EVENTS, self._critical_security_events),
            (Metric.VIEW_TO_MESSAGE_RATE, self._rate(UserEventType.MESSAGE_SEND)),
            (Metric.VIEW_TO_FAVORITE_RATE, self._rate(UserEventType.FAVORITE_ADD)),
            (Metric.FUNNEL_VIEWERS, self._distinct_users(UserEventType.PRODUCT_VIEW)),
            (Metric.FUNNEL_FAVORITERS, self._distinct_users(UserEventType.FAVORITE_ADD)),
            (Metric.FUNNEL_INQUIRERS, self._distinct_users(UserEventType.MESSAGE_SEND)),
        ]

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def aggregate_day(self, day: date, timeout: Optional[float] = None) -> AggregationResult:
        """
        Compute every metric for ``day`` and upsert the rows.

        Safe to repeat: a second run for the same day rewrites the same rows.
        With ``timeout`` the run is cancelled after that many seconds; metrics
        not reached by then are reported as skipped.
        """
        result = AggregationResult(date=day)
        logger.info("Starting daily analytics aggregation", extra={"date": day.isoformat()})
        try:
            if timeout is None:
                await self._run(day, result)
            else:
                await asyncio.wait_for(self._run(day, result), timeout=timeout)
        except asyncio.TimeoutError:
            result.timed_out = True
            done = set(result.succeeded) | set(result.failed)
            result.skipped = [name for name, _ in self.metrics if name not in done]
            logger.error(
                "Daily analytics aggregation timed out",
                extra={"date": day.isoformat(), "timeout": timeout, "skipped": result.skipped},
            )

        log = logger.info if result.status == STATUS_SUCCESS else logger.warning
        log(
            "Daily analytics aggregation finished",
            extra={
                "date": day.isoformat(),
                "status": result.status,
                "failed": sorted(result.failed),
                "rows_written": result.rows_written,
            },
        )
        return result

    async def _run(self, day: date, result: AggregationResult) -> None:
        start, end = day_bounds(day)
        for name, compute in self.metrics:
            try:
                result.rows_written += await self._aggregate_metric(day, name, compute, start, end)
                result.succeeded.append(name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failure = AggregationFailure(name, exc)
                result.failed[name] = str(failure)
                logger.error(
                    "Metric aggregation failed",
                    extra={"date": day.isoformat(), "metric": name, "error": str(failure)},
                )

    async def _aggregate_metric(self, day: date, name: str, compute, start: datetime, end: datetime) -> int:
        async with self.session_factory() as session:
            rows = await compute(session, start, end)
            for value, dimensions in rows:
                await session.execute(self._upsert(session, day, name, value, dimensions))
            await session.commit()
        return len(rows)

    @staticmethod
    def _upsert(session, day: date, name: str, value: float, dimensions: Dict[str, Any]):
        dialect = session.bind.dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(DailyMetric).values(
            date=day,
            metric_name=name,
            metric_value=float(value),
            dimensions=dict(dimensions),
            dimensions_key=dimensions_key(dimensions),
        )
        return stmt.on_conflict_do_update(
            index_elements=["date", "metric_name", "dimensions_key"],
            set_={"metric_value": stmt.excluded.metric_value, "dimensions": stmt.excluded.dimensions},
        )

    async def backfill(self, start: date, end: date, timeout: Optional[float] = None) -> List[AggregationResult]:
        """Aggregate each day in ``[start, end]`` in order, continuing past failures."""
        if end < start:
            return []
        results = []
        day = start
        logger.info("Starting historical backfill", extra={"start": start.isoformat(), "end": end.isoformat()})
        while day <= end:
            try:
                results.append(await self.aggregate_day(day, timeout=timeout))
            except Exception:
                logger.exception("Failed to backfill date", extra={"date": day.isoformat()})
                failed = AggregationResult(date=day)
                failed.failed["*"] = "unexpected error"
                results.append(failed)
            day += timedelta(days=1)
        logger.info("Historical backfill completed", extra={"days": len(results)})
        return results

    # ------------------------------------------------------------------
    # Metric computations
    # ------------------------------------------------------------------

    @staticmethod
    def _in_window(column, start: datetime, end: datetime):
        return and_(column >= start, column < end)

    async def _count(self, session, query) -> int:
        return (await session.execute(query)).scalar() or 0

    async def _dau(self, session, start, end) -> MetricRows:
        value = await self._count(session, select(func.count(func.distinct(UserEvent.user_id))).where(
            self._in_window(UserEvent.created_at, start, end),
            UserEvent.user_id.isnot(None),
        ))
        return [(value, {})]

    async def _dimensioned(self, session, start, end, event_type: str, data_key: str, dimension: str) -> MetricRows:
        result = await session.execute(
            select(UserEvent.event_data).where(
                self._in_window(UserEvent.created_at, start, end),
                UserEvent.event_type == event_type,
            )
        )
        payloads = [data or {} for data in result.scalars().all()]
        rows: MetricRows = [(len(payloads), {})]
        by_value = Counter(str(data[data_key]) for data in payloads if data.get(data_key) is not None)
        for value in sorted(by_value):
            rows.append((by_value[value], {dimension: value}))
        return rows

    async def _new_users(self, session, start, end) -> MetricRows:
        return await self._dimensioned(session, start, end, UserEventType.USER_REGISTER, "user_type", "user_type")

    async def _new_listings(self, session, start, end) -> MetricRows:
        return await self._dimensioned(session, start, end, UserEventType.PRODUCT_CREATE, "category", "category")

    def _event_counter(self, event_type: str):
        async def compute(session, start, end) -> MetricRows:
            value = await self._count(session, select(func.count(UserEvent.id)).where(
                self._in_window(UserEvent.created_at, start, end),
                UserEvent.event_type == event_type,
            ))
            return [(value, {})]
        return compute

    def _distinct_users(self, event_type: str):
        async def compute(session, start, end) -> MetricRows:
            value = await self._count(session, select(func.count(func.distinct(UserEvent.user_id))).where(
                self._in_window(UserEvent.created_at, start, end),
                UserEvent.event_type == event_type,
                UserEvent.user_id.isnot(None),
            ))
            return [(value, {})]
        return compute

    def _rate(self, numerator_type: str):
        async def compute(session, start, end) -> MetricRows:
            counts = dict((await session.execute(
                select(UserEvent.event_type, func.count(UserEvent.id))
                .where(
                    self._in_window(UserEvent.created_at, start, end),
                    UserEvent.event_type.in_([UserEventType.PRODUCT_VIEW, numerator_type]),
                )
                .group_by(UserEvent.event_type)
            )).all())
            views = counts.get(UserEventType.PRODUCT_VIEW, 0)
            return [(percent(counts.get(numerator_type, 0), views), {})]
        return compute

    async def _active_users_30d(self, session, start, end) -> MetricRows:
        value = await self._count(session, select(func.count(func.distinct(UserEvent.user_id))).where(
            self._in_window(UserEvent.created_at, end - timedelta(days=30), end),
            UserEvent.user_id.isnot(None),
        ))
        return [(value, {})]

    async def _failed_logins(self, session, start, end) -> MetricRows:
        value = await self._count(session, select(func.count(SecurityEvent.id)).where(
            self._in_window(SecurityEvent.created_at, start, end),
            SecurityEvent.event_type == SecurityEventType.FAILED_LOGIN.value,
        ))
        return [(value, {})]

    async def _security_events(self, session, start, end) -> MetricRows:
        value = await self._count(session, select(func.count(SecurityEvent.id)).where(
            self._in_window(SecurityEvent.created_at, start, end),
        ))
        return [(value, {})]

    async def _critical_security_events(self, session, start, end) -> MetricRows:
        value = await self._count(session, select(func.count(SecurityEvent.id)).where(
            self._in_window(SecurityEvent.created_at, start, end),
            SecurityEvent.severity == SecuritySeverity.CRITICAL,
        ))
        return [(value, {})]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def today(self) -> date:
        return self.clock().date()

    async def trend(
        self,
        metric_name: str,
        days: int = 30,
        dimensions: Optional[Dict[str, Any]] = None,
        end_date: Optional[date] = None,
    ) -> List[Dict[str, Any]]:
        """One ``{date, value}`` per day ending at ``end_date`` (default today), oldest first, zero-filled."""
        end_date = end_date or self.today()
        start_date = end_date - timedelta(days=days - 1)
        async with self.session_factory() as session:
            result = await session.execute(
                select(DailyMetric.date, DailyMetric.metric_value).where(
                    DailyMetric.metric_name == metric_name,
                    DailyMetric.dimensions_key == dimensions_key(dimensions),
                    DailyMetric.date >= start_date,
                    DailyMetric.date <= end_date,
                )
            )
            by_date = {row.date: row.metric_value for row in result.all()}
        return [
            {"date": day, "value": by_date.get(day, 0.0)}
            for day in (start_date + timedelta(days=offset) for offset in range(days))
        ]

    async def get_date_metrics(self, day: date) -> List[DailyMetric]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DailyMetric)
                .where(DailyMetric.date == day)
                .order_by(DailyMetric.metric_name, DailyMetric.dimensions_key)
            )
            return list(result.scalars().all())

    async def latest_aggregated_day(self) -> Optional[date]:
        async with self.session_factory() as session:
            return (await session.execute(select(func.max(DailyMetric.date)))).scalar()

    async def dashboard_kpis(self) -> Dict[str, Any]:
        """
        Latest aggregated day against the day before it.

        Each KPI carries ``value``, ``previous_value``, ``change_pct`` (None
        when the previous value is zero) and ``trend``.
        """
        latest = await self.latest_aggregated_day()
        current: Dict[str, float] = {}
        previous: Dict[str, float] = {}
        if latest is not None:
            prior = latest - timedelta(days=1)
            async with self.session_factory() as session:
                result = await session.execute(
                    select(DailyMetric.date, DailyMetric.metric_name, DailyMetric.metric_value).where(
                        DailyMetric.date.in_([latest, prior]),
                        DailyMetric.metric_name.in_(KPI_METRICS),
                        DailyMetric.dimensions_key == dimensions_key({}),
                    )
                )
                for row in result.all():
                    target = current if row.date == latest else previous
                    target[row.metric_name] = row.metric_value

        kpis = {}
        for name in KPI_METRICS:
            value = current.get(name, 0.0)
            prev = previous.get(name, 0.0)
            change, direction = percent_change(value, prev)
            kpis[name] = {
                "value": value,
                "previous_value": prev,
                "change_pct": change,
                "trend": direction,
            }
        return {"date": latest, "kpis": kpis}

    async def export_rows(
        self,
        metric_name: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[DailyMetric]:
        """Raw rollup rows, ``start`` and ``end`` inclusive."""
        conditions = []
        if metric_name:
            conditions.append(DailyMetric.metric_name == metric_name)
        if start is not None:
            conditions.append(DailyMetric.date >= start)
        if end is not None:
            conditions.append(DailyMetric.date <= end)
        query = select(DailyMetric).order_by(DailyMetric.date, DailyMetric.metric_name, DailyMetric.dimensions_key)
        if conditions:
            query = query.where(and_(*conditions))
        async with self.session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def realtime_snapshot(self) -> Dict[str, Any]:
        """Live counts that do not wait for the nightly rollup."""
        now = self.clock()
        async with self.session_factory() as session:
            suspended = await self._count(session, select(func.count(User.id)).where(
                User.is_suspended.is_(True),
                User.is_banned.is_(False),
                (User.suspend_expires_at.is_(None)) | (User.suspend_expires_at > now),
            ))
            banned = await self._count(session, select(func.count(User.id)).where(User.is_banned.is_(True)))
            unresolved = await self._count(session, select(func.count(SecurityEvent.id)).where(
                SecurityEvent.resolved.is_(False),
            ))
            recent_actions = await self._count(session, select(func.count(AuditLog.id)).where(
                AuditLog.created_at >= now - timedelta(hours=24),
            ))
            recent = (await session.execute(
                select(AuditLog).order_by(desc(AuditLog.created_at), desc(AuditLog.id)).limit(10)
            )).scalars().all()
        return {
            "suspended_users": suspended,
            "banned_users": banned,
            "unresolved_security_events": unresolved,
            "admin_actions_24h": recent_actions,
            "recent_audit_entries": list(recent),
        }
