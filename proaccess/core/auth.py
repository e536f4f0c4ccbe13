"""
Identity resolution for bearer credentials.

Credentials are HS256 JWTs minted by the account service with the shared
JWT_SECRET. The user id travels in the `userId` claim (falls back to `sub`).
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import logging
from fastapi import Header

from proaccess.core.config import settings
from proaccess.core.errors import Unauthenticated

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def _secret() -> str:
    if not settings.JWT_SECRET:
        # Without a secret nothing can be verified; fail closed.
        raise Unauthenticated("Credential verification is not configured")
    return settings.JWT_SECRET


def resolve(credential: Optional[str]) -> str:
    """
    Verify a bearer credential and return the embedded user id.

    Args:
        credential: Raw JWT (without the "Bearer " prefix)

    Returns:
        user_id from the `userId` claim, or `sub` when absent

    Raises:
        Unauthenticated: Missing, malformed, expired or badly signed credential
    """
    if not credential:
        raise Unauthenticated("Missing credential")

    try:
        payload = jwt.decode(
            credential,
            _secret(),
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["exp"], "verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise Unauthenticated("Invalid token")

    user_id = payload.get("userId") or payload.get("sub")
    if not user_id or not isinstance(user_id, str):
        raise Unauthenticated("Token carries no user id")
    return user_id


def issue_token(user_id: str, ttl_seconds: Optional[int] = None, now: Optional[datetime] = None) -> str:
    """Mint a credential in the format `resolve` accepts."""
    issued = now or datetime.now(timezone.utc)
    ttl = ttl_seconds if ttl_seconds is not None else settings.JWT_DEFAULT_TTL_SECONDS
    payload = {
        "userId": user_id,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=ttl)).timestamp()),
    }
    return jwt.encode(payload, _secret(), algorithm=settings.JWT_ALGORITHM)


async def get_current_user_id(
    authorization: Optional[str] = Header(None, description="Bearer credential"),
) -> str:
    """
    FastAPI dependency: resolve the caller from the Authorization header.

    Raises:
        Unauthenticated: Header missing or credential rejected
    """
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise Unauthenticated("Missing Authorization (Bearer) header")
    return resolve(authorization[len(BEARER_PREFIX):].strip())
