"""
Per-actor fixed-window rate limiter for the admin area.

Process-local. Each actor key owns a small window record guarded by its own
lock; the map of records is guarded by a separate lock that is only held
while a record is looked up, created or evicted. ``allow`` is synchronous so
it can be called from request handlers and from worker threads alike.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Tuple

from admin_core.app.core.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: datetime
    lock: threading.Lock = field(default_factory=threading.Lock)


class RateLimiter:
    """
    Fixed-window counter keyed by actor id.

    The counter for an actor is reset lazily: the first call after the
    previous window's ``reset_at`` opens a new window.
    """

    def __init__(
        self,
        limit: int = 100,
        window_seconds: int = 60,
        idle_eviction_seconds: int = 600,
        clock: Clock = utcnow,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self.idle_eviction = timedelta(seconds=idle_eviction_seconds)
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._global_lock = threading.Lock()

    def allow(self, actor_id) -> Tuple[bool, int, datetime]:
        """
        Count one request for ``actor_id``.

        Returns ``(allowed, remaining, reset_at)``.
        """
        key = str(actor_id)
        while True:
            window = self._get_or_create(key)
            with window.lock:
                # Evicted between lookup and lock; retry against the live record.
                if self._windows.get(key) is not window:
                    continue
                now = self._clock()
                if now >= window.reset_at:
                    window.count = 0
                    window.reset_at = now + self.window
                if window.count >= self.limit:
                    return False, 0, window.reset_at
                window.count += 1
                return True, self.limit - window.count, window.reset_at

    def peek(self, actor_id) -> Tuple[int, datetime]:
        """Remaining budget and reset time without consuming a request."""
        key = str(actor_id)
        now = self._clock()
        with self._global_lock:
            window = self._windows.get(key)
        if window is None:
            return self.limit, now + self.window
        with window.lock:
            if now >= window.reset_at:
                return self.limit, now + self.window
            return max(self.limit - window.count, 0), window.reset_at

    def retry_after(self, reset_at: datetime) -> int:
        """Whole seconds until ``reset_at``, never less than one."""
        seconds = (reset_at - self._clock()).total_seconds()
        whole = int(seconds)
        if whole < seconds:
            whole += 1
        return max(whole, 1)

    def sweep(self) -> int:
        """Evict windows that expired more than ``idle_eviction`` ago. Returns the count evicted."""
        cutoff = self._clock() - self.idle_eviction
        evicted = 0
        with self._global_lock:
            for key, window in list(self._windows.items()):
                with window.lock:
                    if window.reset_at < cutoff:
                        del self._windows[key]
                        evicted += 1
        if evicted:
            logger.info("Rate limiter sweep evicted idle windows", extra={"evicted": evicted})
        return evicted

    def reset(self) -> None:
        with self._global_lock:
            self._windows.clear()

    def __len__(self) -> int:
        with self._global_lock:
            return len(self._windows)

    def _get_or_create(self, key: str) -> _Window:
        with self._global_lock:
            window = self._windows.get(key)
            if window is None:
                # Already expired so the first allow() opens a fresh window.
                window = _Window(count=0, reset_at=datetime.min)
                self._windows[key] = window
            return window
