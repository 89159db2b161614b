"""JWT verification for billing routes.

Tokens are issued by the account service with ``user_id``, ``role`` and
``workspace_id`` claims; this service only verifies them. ``create_access_token``
is used by internal tooling and tests.
"""
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
import os

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-outside-development")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
TOKEN_TTL = timedelta(hours=int(os.getenv("JWT_EXPIRATION_HOURS", "24")))


def create_access_token(claims: Mapping[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    payload = dict(claims)
    payload["exp"] = datetime.now(timezone.utc) + (expires_delta or TOKEN_TTL)
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Claims of a valid token; None when malformed, expired, badly signed or anonymous."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("user_id"):
        return None
    return payload
