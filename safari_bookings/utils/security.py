"""
Bearer token verification.

Tokens are issued by the external identity provider and signed with the
shared SECRET_KEY. create_access_token exists for local development and
tests.
"""

from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
import logging
import secrets

from ..config import settings

logger = logging.getLogger(__name__)


def create_access_token(
    user_id: str,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create a JWT access token"""
    expire = datetime.utcnow() + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = {"sub": user_id, "exp": expire, "jti": secrets.token_urlsafe(8)}
    if email:
        to_encode["email"] = email
    if settings.jwt_audience:
        to_encode["aud"] = settings.jwt_audience
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> Optional[dict]:
    """Decode and verify a JWT token"""
    options = {"verify_aud": bool(settings.jwt_audience)}
    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            audience=settings.jwt_audience or None,
            options=options
        )
    except JWTError as e:
        logger.info(f"Rejected bearer token: {e}")
        return None


def verify_access_token(token: str) -> Optional[dict]:
    """Verify an access token and return payload (must carry a subject)"""
    payload = decode_token(token)
    if payload and payload.get("sub"):
        return payload
    return None
