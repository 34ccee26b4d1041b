"""
JWT token utilities.

Tokens are issued upstream; this service only decodes them to resolve the
calling actor. ``create_access_token`` mirrors the upstream issuer and is
used by the seed script and tests.
"""

from datetime import timedelta
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from admin_core.app.core.config import settings
from admin_core.app.core.clock import utcnow


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data payload to encode in the token (should include: sub, user_id, role)
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string

    Example payload:
        {
            "sub": "username",
            "user_id": 123,
            "role": "admin",
            "iat": 1234567000,
            "exp": 1234567890
        }
    """
    to_encode = data.copy()
    issued_at = utcnow()

    if expires_delta:
        expire = issued_at + expires_delta
    else:
        expire = issued_at + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.setdefault("iat", issued_at)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)

    return encoded_jwt


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token string to decode

    Returns:
        Decoded token payload if valid (includes: sub, user_id, role, iat, exp), None otherwise
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        return payload
    except JWTError:
        return None
