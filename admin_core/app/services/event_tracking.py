"""
Event ingestion and threat detection.

User activity events are accepted immediately and persisted by a single
background worker draining a bounded queue, so events are stored in the
order they were submitted. Security events are written synchronously under
a lock striped by identity: burst detection reads stored timestamps, so a
security event must be persisted before the next one for the same identity
is evaluated.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, func, and_, desc
from sqlalchemy.exc import SQLAlchemyError

from admin_core.app.core.clock import Clock, utcnow
from admin_core.app.core.exceptions import (
    ValidationError,
    StorageFailure,
    ResourceNotFoundError,
    ConflictError,
)
from admin_core.app.models.enums import (
    EventCategory,
    SecurityEventType,
    SecuritySeverity,
    UserEventType,
)
from admin_core.app.models.security_event import SecurityEvent
from admin_core.app.models.user_event import UserEvent

logger = logging.getLogger(__name__)


# Severity is a function of the event type alone.
SEVERITY_BY_TYPE: Dict[SecurityEventType, SecuritySeverity] = {
    SecurityEventType.INVALID_TOKEN: SecuritySeverity.LOW,
    SecurityEventType.FAILED_LOGIN: SecuritySeverity.MEDIUM,
    SecurityEventType.RATE_LIMIT_EXCEEDED: SecuritySeverity.MEDIUM,
    SecurityEventType.SUSPENDED_ACCESS_ATTEMPT: SecuritySeverity.MEDIUM,
    SecurityEventType.UNUSUAL_LOCATION: SecuritySeverity.MEDIUM,
    SecurityEventType.PERMISSION_DENIED: SecuritySeverity.HIGH,
    SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT: SecuritySeverity.HIGH,
    SecurityEventType.SUSPICIOUS_ACTIVITY: SecuritySeverity.HIGH,
    SecurityEventType.AUDIT_WRITE_FAILURE: SecuritySeverity.HIGH,
    SecurityEventType.EVENT_WRITE_FAILURE: SecuritySeverity.HIGH,
    SecurityEventType.BRUTE_FORCE_ATTEMPT: SecuritySeverity.CRITICAL,
}

OVERFLOW_DROP_OLDEST = "drop_oldest"
OVERFLOW_BLOCK = "block"

_WORKER_BATCH_SIZE = 100
IDENTITY_LOCK_STRIPES = 256


def classify_severity(event_type: Union[SecurityEventType, str]) -> SecuritySeverity:
    """Severity for a security event type. Unknown types are rejected."""
    try:
        return SEVERITY_BY_TYPE[SecurityEventType(event_type)]
    except ValueError:
        raise ValidationError(
            "Unknown security event type",
            details={"event_type": str(event_type)},
        )


def identity_key_for(user_id: Optional[int], ip_address: Optional[str]) -> Optional[str]:
    """Burst-detection identity: the user id when known, otherwise the source IP."""
    if user_id is not None:
        return f"user:{user_id}"
    if ip_address:
        return f"ip:{ip_address}"
    return None


class BruteForceDetector:
    """
    Rolling-window failed-login detector.

    Counts stored ``failed_login`` rows for an identity inside the trailing
    window. When the count reaches ``threshold`` and no ``brute_force_attempt``
    for that identity falls inside the same window, one alert is due.
    """

    def __init__(self, threshold: int = 5, window_seconds: int = 300):
        self.threshold = threshold
        self.window = timedelta(seconds=window_seconds)

    async def failures_in_window(self, session, identity_key: str, now: datetime) -> int:
        result = await session.execute(
            select(func.count(SecurityEvent.id)).where(
                SecurityEvent.identity_key == identity_key,
                SecurityEvent.event_type == SecurityEventType.FAILED_LOGIN.value,
                SecurityEvent.created_at > now - self.window,
                SecurityEvent.created_at <= now,
            )
        )
        return result.scalar() or 0

    async def recently_alerted(self, session, identity_key: str, now: datetime) -> bool:
        result = await session.execute(
            select(func.count(SecurityEvent.id)).where(
                SecurityEvent.identity_key == identity_key,
                SecurityEvent.event_type == SecurityEventType.BRUTE_FORCE_ATTEMPT.value,
                SecurityEvent.created_at > now - self.window,
            )
        )
        return (result.scalar() or 0) > 0

    async def evaluate(self, session, identity_key: str, now: datetime) -> Optional[int]:
        """Failure count when an alert should fire, otherwise None."""
        failures = await self.failures_in_window(session, identity_key, now)
        if failures < self.threshold:
            return None
        if await self.recently_alerted(session, identity_key, now):
            return None
        return failures


class EventTrackingService:
    """
    Event ingestor and threat detector.

    Args:
        session_factory: ``async_sessionmaker`` used for every write and query
        notifier: alert collaborator, called for critical security events
        clock: source of event timestamps
        detector: brute-force detector
        queue_maxsize: capacity of the user event queue
        overflow: ``drop_oldest`` or ``block`` when the queue is full
    """

    def __init__(
        self,
        session_factory,
        notifier,
        clock: Clock = utcnow,
        detector: Optional[BruteForceDetector] = None,
        queue_maxsize: int = 10000,
        overflow: str = OVERFLOW_DROP_OLDEST,
    ):
        if overflow not in (OVERFLOW_DROP_OLDEST, OVERFLOW_BLOCK):
            raise ValueError(f"Unknown overflow policy: {overflow}")
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.detector = detector or BruteForceDetector()
        self.queue_maxsize = queue_maxsize
        self.overflow = overflow
        self.dropped = 0
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._identity_stripes = tuple(asyncio.Lock() for _ in range(IDENTITY_LOCK_STRIPES))

    # ------------------------------------------------------------------
    # User events
    # ------------------------------------------------------------------

    async def track(
        self,
        event_type: str,
        event_category: Union[EventCategory, str],
        user_id: Optional[int] = None,
        event_data: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        """
        Accept a user event for asynchronous storage.

        Validation happens here so a malformed event is rejected before it
        reaches the queue. Returns once the event is queued.
        """
        if not isinstance(event_type, str) or not event_type.strip() or len(event_type) > 50:
            raise ValidationError("Invalid event type", details={"event_type": event_type})
        try:
            category = EventCategory(event_category)
        except ValueError:
            raise ValidationError("Invalid event category", details={"event_category": str(event_category)})
        if event_data is not None and not isinstance(event_data, dict):
            raise ValidationError("Event data must be a mapping")

        record = {
            "user_id": user_id,
            "event_type": event_type,
            "event_category": category.value,
            "event_data": dict(event_data or {}),
            "ip_address": ip_address,
            "user_agent": user_agent,
            "session_id": session_id,
            "created_at": self.clock(),
        }
        await self._enqueue(record)

    async def _enqueue(self, record: Dict[str, Any]) -> None:
        queue = self._ensure_worker()
        if self.overflow == OVERFLOW_BLOCK:
            await queue.put(record)
            return
        while True:
            try:
                queue.put_nowait(record)
                return
            except asyncio.QueueFull:
                try:
                    queue.get_nowait()
                    queue.task_done()
                    self.dropped += 1
                    logger.warning("Event queue full, dropped oldest event", extra={"dropped_total": self.dropped})
                except asyncio.QueueEmpty:
                    pass

    def _ensure_worker(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.queue_maxsize)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())
        return self._queue

    async def _drain(self) -> None:
        queue = self._queue
        while True:
            batch = [await queue.get()]
            while len(batch) < _WORKER_BATCH_SIZE:
                try:
                    batch.append(queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            try:
                await self._write_user_events(batch)
            except StorageFailure as exc:
                logger.error(
                    "Failed to persist user events",
                    extra={
                        "count": len(batch),
                        "event_types": [item["event_type"] for item in batch],
                        "error": str(exc),
                    },
                )
                await self._report_gap(
                    f"{len(batch)} user events could not be written",
                    exc,
                    {"count": len(batch), "event_types": sorted({item["event_type"] for item in batch})},
                )
            except Exception as exc:
                # The worker outlives any single batch.
                logger.exception("User event worker error", extra={"count": len(batch)})
                await self._report_gap(
                    f"{len(batch)} user events could not be written", exc, {"count": len(batch)},
                )
            finally:
                for _ in batch:
                    queue.task_done()

    async def _write_user_events(self, batch: List[Dict[str, Any]]) -> None:
        try:
            async with self.session_factory() as session:
                session.add_all([UserEvent(**item) for item in batch])
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StorageFailure(str(exc)) from exc

    async def _report_gap(self, description: str, exc: Exception, metadata: Dict[str, Any], **fields) -> None:
        # Not persisted: the store that just failed is the one it would go to.
        alert = SecurityEvent(
            event_type=SecurityEventType.EVENT_WRITE_FAILURE.value,
            severity=SEVERITY_BY_TYPE[SecurityEventType.EVENT_WRITE_FAILURE],
            description=description,
            meta_data={**metadata, "error": type(exc.__cause__ or exc).__name__},
            resolved=False,
            created_at=self.clock(),
            **fields,
        )
        await self._notify(alert)

    async def flush(self) -> None:
        """Wait until every queued user event has been handled."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()

    async def stop(self) -> None:
        """Drain the queue and stop the worker."""
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    # ------------------------------------------------------------------
    # Security events
    # ------------------------------------------------------------------

    def _identity_lock(self, key: str) -> asyncio.Lock:
        # Fixed pool: identities sharing a stripe serialize, the pool never grows.
        return self._identity_stripes[hash(key) % len(self._identity_stripes)]

    async def track_security(
        self,
        event_type: Union[SecurityEventType, str],
        user_id: Optional[int] = None,
        description: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        """
        Persist a security event and run threat detection on it.

        Severity is derived from ``event_type``. Raises ``ValidationError`` for
        an unknown type and ``StorageFailure`` when the write fails.
        """
        severity = classify_severity(event_type)
        event_type = SecurityEventType(event_type)
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("Security event metadata must be a mapping")

        identity_key = identity_key_for(user_id, ip_address)
        lock = self._identity_lock(identity_key or "anonymous")

        alerts: List[SecurityEvent] = []
        async with lock:
            now = self.clock()
            try:
                async with self.session_factory() as session:
                    event = SecurityEvent(
                        user_id=user_id,
                        identity_key=identity_key,
                        event_type=event_type.value,
                        severity=severity,
                        description=description,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        meta_data=dict(metadata or {}),
                        resolved=False,
                        created_at=now,
                    )
                    session.add(event)
                    await session.flush()

                    if event_type == SecurityEventType.FAILED_LOGIN and identity_key:
                        failures = await self.detector.evaluate(session, identity_key, now)
                        if failures is not None:
                            alert = SecurityEvent(
                                user_id=user_id,
                                identity_key=identity_key,
                                event_type=SecurityEventType.BRUTE_FORCE_ATTEMPT.value,
                                severity=SEVERITY_BY_TYPE[SecurityEventType.BRUTE_FORCE_ATTEMPT],
                                description=(
                                    f"{failures} failed logins for {identity_key} "
                                    f"within {int(self.detector.window.total_seconds())} seconds"
                                ),
                                ip_address=ip_address,
                                user_agent=user_agent,
                                meta_data={
                                    "failed_attempts": failures,
                                    "window_seconds": int(self.detector.window.total_seconds()),
                                    "trigger_event_id": event.id,
                                },
                                resolved=False,
                                created_at=now,
                            )
                            session.add(alert)
                            alerts.append(alert)

                    await session.commit()
            except (SQLAlchemyError, OSError) as exc:
                logger.error(
                    "Failed to persist security event",
                    extra={"event_type": event_type.value, "user_id": user_id, "ip": ip_address},
                )
                await self._report_gap(
                    f"Security event {event_type.value} could not be written",
                    exc,
                    {"event_type": event_type.value, "severity": severity.value, **(metadata or {})},
                    user_id=user_id,
                    identity_key=identity_key,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                raise StorageFailure(str(exc)) from exc

        logger.warning(
            "Security event tracked",
            extra={
                "security_event_id": event.id,
                "event_type": event_type.value,
                "severity": severity.value,
                "user_id": user_id,
                "ip": ip_address,
            },
        )
        if severity == SecuritySeverity.CRITICAL:
            await self._notify(event)
        for alert in alerts:
            logger.error(
                "Brute force attempt detected",
                extra={"identity_key": identity_key, "failed_attempts": alert.meta_data["failed_attempts"]},
            )
            await self._notify(alert)
        return event

    async def _notify(self, event: SecurityEvent) -> None:
        try:
            await self.notifier.notify(event)
        except Exception:
            logger.exception("Security notifier failed", extra={"security_event_id": event.id})

    # ------------------------------------------------------------------
    # Convenience trackers
    # ------------------------------------------------------------------

    async def track_login(self, user_id: int, ip_address=None, user_agent=None, session_id=None) -> None:
        await self.track(
            UserEventType.USER_LOGIN, EventCategory.AUTH, user_id=user_id,
            event_data={"method": "email"}, ip_address=ip_address,
            user_agent=user_agent, session_id=session_id,
        )

    async def track_registration(self, user_id: int, user_type: str, ip_address=None, user_agent=None) -> None:
        await self.track(
            UserEventType.USER_REGISTER, EventCategory.AUTH, user_id=user_id,
            event_data={"user_type": user_type}, ip_address=ip_address, user_agent=user_agent,
        )

    async def track_product_view(
        self, user_id: Optional[int], product_id: int, category: Optional[str] = None,
        ip_address=None, user_agent=None,
    ) -> None:
        data = {"product_id": product_id}
        if category:
            data["category"] = category
        await self.track(
            UserEventType.PRODUCT_VIEW, EventCategory.PRODUCT, user_id=user_id,
            event_data=data, ip_address=ip_address, user_agent=user_agent,
        )

    async def track_search(
        self, user_id: Optional[int], query: str, filters: Optional[Dict[str, Any]] = None,
        results_count: int = 0, ip_address=None, user_agent=None,
    ) -> None:
        await self.track(
            UserEventType.SEARCH_QUERY, EventCategory.SEARCH, user_id=user_id,
            event_data={"query": query, "filters": filters or {}, "results_count": results_count},
            ip_address=ip_address, user_agent=user_agent,
        )

    async def track_failed_login(
        self, identifier: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None,
        reason: str = "invalid_credentials", user_id: Optional[int] = None,
    ) -> SecurityEvent:
        return await self.track_security(
            SecurityEventType.FAILED_LOGIN,
            user_id=user_id,
            description=f"Failed login attempt for {identifier}. Reason: {reason}",
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"identifier": identifier, "reason": reason},
        )

    async def track_permission_denied(
        self, user_id: Optional[int], resource: str, action: str,
        ip_address: Optional[str] = None, user_agent: Optional[str] = None,
    ) -> SecurityEvent:
        return await self.track_security(
            SecurityEventType.PERMISSION_DENIED,
            user_id=user_id,
            description=f"User {user_id} denied {action} on {resource}",
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"resource": resource, "action": action},
        )

    async def track_rate_limit_exceeded(
        self, user_id: Optional[int], endpoint: str,
        ip_address: Optional[str] = None, user_agent: Optional[str] = None,
    ) -> SecurityEvent:
        return await self.track_security(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            user_id=user_id,
            description=f"Rate limit exceeded for endpoint: {endpoint}",
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"endpoint": endpoint},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_timeline(self, user_id: int, limit: int = 100) -> List[UserEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(UserEvent)
                .where(UserEvent.user_id == user_id)
                .order_by(desc(UserEvent.created_at), desc(UserEvent.id))
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_recent_security(
        self,
        severity: Optional[Union[SecuritySeverity, str]] = None,
        resolved: Optional[bool] = None,
        user_id: Optional[int] = None,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        hours: Optional[int] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        """Security events, newest first. ``hours`` is a shorthand for ``since``."""
        conditions = []
        if since is None and hours is not None:
            since = self.clock() - timedelta(hours=hours)
        if since is not None:
            conditions.append(SecurityEvent.created_at >= since)
        if until is not None:
            conditions.append(SecurityEvent.created_at < until)
        if severity is not None:
            conditions.append(SecurityEvent.severity == SecuritySeverity(severity))
        if resolved is not None:
            conditions.append(SecurityEvent.resolved == resolved)
        if user_id is not None:
            conditions.append(SecurityEvent.user_id == user_id)
        if event_type is not None:
            conditions.append(SecurityEvent.event_type == event_type)

        query = select(SecurityEvent).order_by(desc(SecurityEvent.created_at), desc(SecurityEvent.id))
        if conditions:
            query = query.where(and_(*conditions))
        async with self.session_factory() as session:
            result = await session.execute(query.limit(limit))
            return list(result.scalars().all())

    async def resolve_security_event(
        self, event_id: int, resolver_id: int, notes: Optional[str] = None,
    ) -> SecurityEvent:
        async with self.session_factory() as session:
            event = await session.get(SecurityEvent, event_id)
            if event is None:
                raise ResourceNotFoundError("Security event", event_id)
            if event.resolved:
                raise ConflictError("Security event is already resolved")
            event.resolved = True
            event.resolved_by = resolver_id
            event.resolved_at = self.clock()
            if notes:
                event.meta_data = {**(event.meta_data or {}), "resolution_notes": notes}
            await session.commit()
            await session.refresh(event)
        logger.info("Security event resolved", extra={"security_event_id": event_id, "resolved_by": resolver_id})
        return event

    async def get_event_stats(self, days: int = 30) -> List[Dict[str, Any]]:
        since = self.clock() - timedelta(days=days)
        count = func.count(UserEvent.id).label("count")
        query = (
            select(
                UserEvent.event_category,
                UserEvent.event_type,
                count,
                func.count(func.distinct(UserEvent.user_id)).label("unique_users"),
            )
            .where(UserEvent.created_at >= since)
            .group_by(UserEvent.event_category, UserEvent.event_type)
            .order_by(desc(count), UserEvent.event_type)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(query)).all()
        return [
            {
                "event_category": row.event_category,
                "event_type": row.event_type,
                "count": row.count,
                "unique_users": row.unique_users,
            }
            for row in rows
        ]

    async def get_security_summary(self, days: int = 7, suspicious_threshold: int = 10) -> Dict[str, Any]:
        """
        Dashboard summary of security activity.

        ``suspicious_ips`` lists addresses with at least ``suspicious_threshold``
        failed logins in the last 24 hours.
        """
        now = self.clock()
        since = now - timedelta(days=days)
        async with self.session_factory() as session:
            by_severity = (await session.execute(
                select(SecurityEvent.severity, func.count(SecurityEvent.id))
                .where(SecurityEvent.created_at >= since)
                .group_by(SecurityEvent.severity)
            )).all()

            by_type = (await session.execute(
                select(SecurityEvent.event_type, func.count(SecurityEvent.id).label("count"))
                .where(SecurityEvent.created_at >= since)
                .group_by(SecurityEvent.event_type)
                .order_by(desc("count"))
            )).all()

            failed_by_ip = (await session.execute(
                select(SecurityEvent.ip_address, func.count(SecurityEvent.id).label("count"))
                .where(
                    SecurityEvent.created_at >= since,
                    SecurityEvent.event_type == SecurityEventType.FAILED_LOGIN.value,
                    SecurityEvent.ip_address.isnot(None),
                )
                .group_by(SecurityEvent.ip_address)
                .order_by(desc("count"))
                .limit(10)
            )).all()

            suspicious = (await session.execute(
                select(SecurityEvent.ip_address, func.count(SecurityEvent.id).label("count"))
                .where(
                    SecurityEvent.created_at >= now - timedelta(hours=24),
                    SecurityEvent.event_type == SecurityEventType.FAILED_LOGIN.value,
                    SecurityEvent.ip_address.isnot(None),
                )
                .group_by(SecurityEvent.ip_address)
                .having(func.count(SecurityEvent.id) >= suspicious_threshold)
                .order_by(desc("count"))
            )).all()

            unresolved = (await session.execute(
                select(func.count(SecurityEvent.id)).where(SecurityEvent.resolved.is_(False))
            )).scalar() or 0

        return {
            "days": days,
            "by_severity": {severity.value: count for severity, count in by_severity},
            "by_type": [{"event_type": event_type, "count": count} for event_type, count in by_type],
            "failed_logins_by_ip": [{"ip_address": ip, "count": count} for ip, count in failed_by_ip],
            "suspicious_ips": [{"ip_address": ip, "count": count} for ip, count in suspicious],
            "unresolved": unresolved,
        }
