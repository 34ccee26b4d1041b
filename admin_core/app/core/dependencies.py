"""
Identity dependencies for FastAPI.

Resolves the bearer token on an admin request to the acting ``User``.
Token issuance happens upstream; this module only verifies.
"""

import logging
from typing import Optional
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from admin_core.app.core.jwt import decode_access_token
from admin_core.app.core.exceptions import AuthenticationError, SessionRevokedError, StorageFailure
from admin_core.app.db.session import get_db
from admin_core.app.models.enums import SecurityEventType
from admin_core.app.models.user import User

logger = logging.getLogger(__name__)

# HTTP Bearer security scheme; missing credentials are reported as 401 below
security = HTTPBearer(auto_error=False)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def get_current_actor(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    FastAPI dependency resolving the calling actor.

    Checks, in order:
    1. A bearer token is present and its signature and expiry are valid
    2. The token carries a ``user_id``
    3. The user's sessions were not revoked after the token was issued
    4. The user still exists

    Ban and suspension are not checked here; the access guard handles them
    so the attempt is recorded as a security event.

    Raises:
        AuthenticationError / SessionRevokedError: 401
    """
    services = request.app.state.services
    if credentials is None:
        raise AuthenticationError("Not authenticated")

    # 1. Decode and validate JWT
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        try:
            await services.events.track_security(
                SecurityEventType.INVALID_TOKEN,
                description=f"Invalid bearer token on {request.method} {request.url.path}",
                ip_address=client_ip(request),
                user_agent=request.headers.get("User-Agent"),
            )
        except StorageFailure:
            logger.error("Invalid token event not recorded", extra={"path": request.url.path})
        raise AuthenticationError("Could not validate credentials")

    # 2. Token must identify a user
    user_id = payload.get("user_id")
    if not user_id:
        raise AuthenticationError("Invalid token payload")

    # 3. Session revocation (suspend, ban, explicit revoke)
    if await services.sessions.is_token_revoked(user_id, payload.get("iat")):
        raise SessionRevokedError()

    # 4. Real-time database lookup
    user = await db.get(User, user_id)
    if user is None:
        raise AuthenticationError("User not found")

    return user
