"""
Security utilities for the workflow engine.

Authentication itself lives outside this service; callers arrive with a
bearer JWT issued by the identity provider. This module only verifies it
and exposes the organization the request is scoped to.
"""

from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials as HTTPAuthCredentials
from fastapi.security import HTTPBearer
from pydantic import BaseModel

from app.config import get_settings
from core.exceptions import UnauthorizedError

ALGORITHM = "HS256"

# auto_error=False so a missing header goes through UnauthorizedError
security_scheme = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    """JWT token payload structure."""

    sub: str  # user_id
    org_id: str
    exp: datetime
    iat: datetime
    type: str = "access"


def create_access_token(user_id: str, org_id: str) -> str:
    """
    Create a JWT access token.

    Args:
        user_id: User ID
        org_id: Organization ID

    Returns:
        Encoded JWT token
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "org_id": org_id,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> TokenPayload:
    """
    Decode and verify a JWT access token.

    Raises:
        UnauthorizedError: If the token is expired, malformed or not an access token
    """
    settings = get_settings()
    try:
        raw = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token has expired")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid token")

    if raw.get("type") != "access" or not raw.get("org_id"):
        raise UnauthorizedError("Invalid token")
    return TokenPayload(**raw)


async def get_current_principal(
    credentials: HTTPAuthCredentials = Depends(security_scheme),
) -> TokenPayload:
    """FastAPI dependency resolving the bearer token to its payload."""
    if credentials is None:
        raise UnauthorizedError("Missing bearer token")
    return decode_access_token(credentials.credentials)
