"""
Composition root.

Builds the admin core services once per application and wires their
collaborators together. Tests call ``build_services`` with an in-memory
database, a fake Redis and a frozen clock.
"""

from dataclasses import dataclass
from typing import Any, Optional

from admin_core.app.core.clock import Clock, utcnow
from admin_core.app.core.config import Settings, settings as default_settings
from admin_core.app.core.rate_limiter import RateLimiter
from admin_core.app.core.token_revocation import RedisSessionRevoker
from admin_core.app.services.access_guard import AccessGuard
from admin_core.app.services.aggregation_scheduler import AggregationScheduler
from admin_core.app.services.analytics import AggregationEngine
from admin_core.app.services.audit import AuditRecorder
from admin_core.app.services.event_tracking import BruteForceDetector, EventTrackingService
from admin_core.app.services.notification_service import LoggingNotifier, SecurityNotifier
from admin_core.app.services.user_admin import UserAdminService


@dataclass
class AdminServices:
    settings: Settings
    session_factory: Any
    engine: Any
    redis: Any
    clock: Clock
    notifier: SecurityNotifier
    sessions: Any
    rate_limiter: RateLimiter
    events: EventTrackingService
    audit: AuditRecorder
    access_guard: AccessGuard
    users: UserAdminService
    analytics: AggregationEngine
    scheduler: AggregationScheduler


def build_services(
    session_factory=None,
    engine=None,
    redis=None,
    settings: Optional[Settings] = None,
    clock: Clock = utcnow,
    notifier: Optional[SecurityNotifier] = None,
    sessions=None,
) -> AdminServices:
    """
    Wire the admin core.

    Unset collaborators fall back to the production ones: the configured
    database engine, the shared Redis client, ``LoggingNotifier`` and a
    Redis-backed session revoker.
    """
    settings = settings or default_settings
    if session_factory is None or engine is None:
        from admin_core.app.db.session import AsyncSessionLocal, engine as db_engine
        session_factory = session_factory or AsyncSessionLocal
        engine = engine or db_engine
    if redis is None:
        from admin_core.app.core.redis_client import redis_client
        redis = redis_client
    notifier = notifier or LoggingNotifier()
    if sessions is None:
        # Revocation is compared against token iat, which is wall-clock time.
        sessions = RedisSessionRevoker(redis, ttl_seconds=settings.access_token_expire_minutes * 60)

    rate_limiter = RateLimiter(
        limit=settings.admin_rate_limit_requests,
        window_seconds=settings.admin_rate_limit_window_seconds,
        idle_eviction_seconds=settings.rate_limit_idle_eviction_seconds,
        clock=clock,
    )
    events = EventTrackingService(
        session_factory,
        notifier,
        clock=clock,
        detector=BruteForceDetector(
            threshold=settings.brute_force_threshold,
            window_seconds=settings.brute_force_window_seconds,
        ),
        queue_maxsize=settings.event_queue_maxsize,
        overflow=settings.event_queue_overflow,
    )
    audit = AuditRecorder(session_factory, notifier, clock=clock)
    access_guard = AccessGuard(events, rate_limiter, clock=clock, ip_allowlist=settings.admin_ip_allowlist)
    users = UserAdminService(session_factory, audit, access_guard, sessions, clock=clock)
    analytics = AggregationEngine(session_factory, clock=clock)
    scheduler = AggregationScheduler(
        analytics,
        interval_seconds=settings.aggregation_interval_seconds,
        timeout_seconds=settings.aggregation_timeout_seconds,
        clock=clock,
    )
    return AdminServices(
        settings=settings,
        session_factory=session_factory,
        engine=engine,
        redis=redis,
        clock=clock,
        notifier=notifier,
        sessions=sessions,
        rate_limiter=rate_limiter,
        events=events,
        audit=audit,
        access_guard=access_guard,
        users=users,
        analytics=analytics,
        scheduler=scheduler,
    )
