"""
Session revocation backed by Redis.

Revoking a user's sessions stores the revocation time under a per-user key.
Any token issued at or before that time is rejected, so every session that
existed when an admin suspended or banned the account stops working
immediately, while tokens issued after the transition keep working.
"""

import logging
from datetime import datetime
from typing import Optional

from admin_core.app.core.clock import Clock, utcnow

logger = logging.getLogger(__name__)

USER_TOKENS_PREFIX = "user:tokens:"


def _revocation_key(user_id: int) -> str:
    return f"{USER_TOKENS_PREFIX}{user_id}:revoked_before"


def _to_epoch(moment: datetime) -> int:
    return int((moment - datetime(1970, 1, 1)).total_seconds())


class RedisSessionRevoker:
    """
    Session collaborator.

    Args:
        redis: async Redis client (``redis.asyncio`` or a compatible fake)
        ttl_seconds: lifetime of a revocation marker; the longest a token can live
        clock: source of "now"
    """

    def __init__(self, redis, ttl_seconds: int, clock: Clock = utcnow):
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def revoke_all_sessions(self, user_id: int) -> bool:
        """Invalidate every token issued to ``user_id`` up to now."""
        try:
            await self.redis.set(
                _revocation_key(user_id),
                str(_to_epoch(self._clock())),
                ex=self.ttl_seconds,
            )
            return True
        except Exception:
            logger.exception("Failed to revoke sessions", extra={"user_id": user_id})
            return False

    async def revoked_before(self, user_id: int) -> Optional[int]:
        value = await self.redis.get(_revocation_key(user_id))
        if value is None:
            return None
        return int(value)

    async def is_token_revoked(self, user_id: int, issued_at: Optional[int]) -> bool:
        """
        Check a token's ``iat`` claim against the user's revocation marker.

        Tokens without ``iat`` are treated as revoked once a marker exists.
        Lookup errors fail open, matching how Redis outages are handled for
        the rest of the request path.
        """
        try:
            cutoff = await self.revoked_before(user_id)
        except Exception:
            logger.exception("Failed to check session revocation", extra={"user_id": user_id})
            return False
        if cutoff is None:
            return False
        if issued_at is None:
            return True
        return int(issued_at) <= cutoff
