"""
Audit recorder for admin actions.

Every permitted admin mutation is recorded with before/after snapshots.
Entries are append-only: this module inserts and reads, nothing else.
A failed write never aborts the admin action that triggered it; the gap is
logged and surfaced to operators through the notifier.
"""

import enum
import logging
import math
from datetime import date, datetime, timedelta
from typing import Optional, Dict, Any, List

from sqlalchemy import select, func, desc, or_, and_
from sqlalchemy.exc import SQLAlchemyError

from admin_core.app.core.clock import Clock, utcnow
from admin_core.app.core.exceptions import ValidationError
from admin_core.app.models.audit_log import AuditLog
from admin_core.app.models.enums import SecurityEventType, SecuritySeverity
from admin_core.app.models.security_event import SecurityEvent

logger = logging.getLogger(__name__)

REDACTION_MARKER = "***REDACTED***"
SENSITIVE_KEY_FRAGMENTS = ("password", "token", "secret", "key")


class AuditAction:
    """Standardized audit action names."""
    USER_UPDATE = "user.update"
    USER_BAN = "user.ban"
    USER_UNBAN = "user.unban"
    USER_SUSPEND = "user.suspend"
    USER_UNSUSPEND = "user.unsuspend"
    USER_SESSION_REVOKE = "user.session_revoke"

    ROLE_CHANGE = "role.change"
    PERMISSION_GRANT = "permission.grant"
    PERMISSION_REVOKE = "permission.revoke"

    SECURITY_EVENT_RESOLVE = "security.event_resolve"

    ANALYTICS_AGGREGATE = "analytics.aggregate"
    ANALYTICS_BACKFILL = "analytics.backfill"
    ANALYTICS_EXPORT = "analytics.export"


class TargetType:
    USER = "user"
    PERMISSION = "permission"
    SECURITY_EVENT = "security_event"
    METRIC = "metric"


def is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in SENSITIVE_KEY_FRAGMENTS)


def redact(value: Any) -> Any:
    """
    Copy of ``value`` with sensitive keys masked at every nesting level.

    Dates and enums are converted to their JSON form on the way.
    """
    if isinstance(value, dict):
        return {
            str(k): (REDACTION_MARKER if is_sensitive_key(k) else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class AuditRecorder:
    """
    Append-only audit trail.

    Args:
        session_factory: ``async_sessionmaker``; each write gets its own
            session so a failed business transaction cannot roll it back
        notifier: alert collaborator for write failures
        clock: source of ``created_at``
    """

    def __init__(self, session_factory, notifier, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock

    async def record(
        self,
        actor_id: Optional[int],
        action: str,
        target_type: Optional[str] = None,
        target_id: Any = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """
        Write one audit entry and return its id.

        Malformed input raises ``ValidationError`` and nothing is written.
        Storage errors are logged and reported; the return value is then None.
        """
        if not isinstance(action, str) or not action.strip():
            raise ValidationError("Audit action is required")
        for name, snapshot in (("before", before), ("after", after), ("metadata", metadata)):
            if snapshot is not None and not isinstance(snapshot, dict):
                raise ValidationError(f"Audit {name} must be a mapping", details={"field": name})

        entry = AuditLog(
            actor_id=actor_id,
            action=action,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            before_state=redact(before) if before is not None else None,
            after_state=redact(after) if after is not None else None,
            reason=reason,
            ip_address=ip_address,
            user_agent=user_agent,
            meta_data=redact(metadata or {}),
            created_at=self.clock(),
        )
        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
                return entry.id
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                "Failed to write audit entry",
                extra={
                    "actor_id": actor_id,
                    "action": action,
                    "target_type": target_type,
                    "target_id": entry.target_id,
                    "error": str(exc),
                },
            )
            await self._report_gap(entry, exc)
            return None

    async def _report_gap(self, entry: AuditLog, exc: Exception) -> None:
        # Not persisted: the store that just failed is the one it would go to.
        alert = SecurityEvent(
            user_id=entry.actor_id,
            event_type=SecurityEventType.AUDIT_WRITE_FAILURE.value,
            severity=SecuritySeverity.HIGH,
            description=f"Audit entry for {entry.action} could not be written",
            ip_address=entry.ip_address,
            meta_data={
                "action": entry.action,
                "target_type": entry.target_type,
                "target_id": entry.target_id,
                "error": type(exc).__name__,
            },
            resolved=False,
            created_at=entry.created_at,
        )
        try:
            await self.notifier.notify(alert)
        except Exception:
            logger.exception("Security notifier failed for audit write failure", extra={"action": entry.action})

    async def query(
        self,
        actor_id: Optional[int] = None,
        action: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Any = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """
        Filtered audit entries, newest first, with page/limit pagination.

        ``end`` is exclusive. ``search`` matches action or reason, case-insensitively.
        """
        conditions = []
        if actor_id is not None:
            conditions.append(AuditLog.actor_id == actor_id)
        if action:
            conditions.append(AuditLog.action == action)
        if target_type:
            conditions.append(AuditLog.target_type == target_type)
        if target_id is not None:
            conditions.append(AuditLog.target_id == str(target_id))
        if start is not None:
            conditions.append(AuditLog.created_at >= start)
        if end is not None:
            conditions.append(AuditLog.created_at < end)
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(AuditLog.action.ilike(pattern), AuditLog.reason.ilike(pattern)))

        where = and_(*conditions) if conditions else None
        count_query = select(func.count(AuditLog.id))
        list_query = select(AuditLog).order_by(desc(AuditLog.created_at), desc(AuditLog.id))
        if where is not None:
            count_query = count_query.where(where)
            list_query = list_query.where(where)

        async with self.session_factory() as session:
            total = (await session.execute(count_query)).scalar() or 0
            result = await session.execute(list_query.offset((page - 1) * limit).limit(limit))
            items = list(result.scalars().all())

        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if limit else 0,
        }

    async def stats(self, days: int = 30) -> Dict[str, Any]:
        """Counts by actor (top 10), by action, and per day over the last ``days`` days."""
        since = self.clock() - timedelta(days=days)
        count = func.count(AuditLog.id).label("count")
        day = func.date(AuditLog.created_at).label("day")
        async with self.session_factory() as session:
            by_actor = (await session.execute(
                select(AuditLog.actor_id, count)
                .where(AuditLog.created_at >= since)
                .group_by(AuditLog.actor_id)
                .order_by(desc(count))
                .limit(10)
            )).all()
            by_action = (await session.execute(
                select(AuditLog.action, count)
                .where(AuditLog.created_at >= since)
                .group_by(AuditLog.action)
                .order_by(desc(count))
            )).all()
            daily = (await session.execute(
                select(day, count)
                .where(AuditLog.created_at >= since)
                .group_by(day)
                .order_by(day)
            )).all()

        return {
            "days": days,
            "by_actor": [{"actor_id": row.actor_id, "count": row.count} for row in by_actor],
            "by_action": [{"action": row.action, "count": row.count} for row in by_action],
            "daily": [{"date": str(row.day), "count": row.count} for row in daily],
        }

    async def actor_timeline(self, actor_id: int, limit: int = 100) -> List[AuditLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AuditLog)
                .where(AuditLog.actor_id == actor_id)
                .order_by(desc(AuditLog.created_at), desc(AuditLog.id))
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_since(self, since: datetime) -> int:
        async with self.session_factory() as session:
            return (await session.execute(
                select(func.count(AuditLog.id)).where(AuditLog.created_at >= since)
            )).scalar() or 0
