from fastapi import Request, HTTPException, status
from typing import Optional
import hmac
import logging
import os
from auth import decode_access_token
from models import UserRole

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def workspace_route_guard(request: Request) -> dict:
    """Guard for workspace billing routes; the token must name a workspace."""
    user = await require_auth(request)
    if not user.get("workspace_id"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No workspace in session"
        )
    return user

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    user = await require_auth(request)
    if user.get("role") != UserRole.ROLE_ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user

def _configured_cron_secret() -> str:
    return (os.getenv("CRON_SECRET") or os.getenv("BILLING_CRON_SECRET") or "").strip()

def cron_secret_ok(request: Request) -> bool:
    """True when the request carries the shared cron secret.

    Accepted as ``x-cron-secret: <secret>`` or ``Authorization: Bearer <secret>``.
    """
    configured = _configured_cron_secret()
    if not configured:
        return False
    presented = (request.headers.get("x-cron-secret") or "").strip()
    if not presented:
        auth_header = request.headers.get("Authorization") or ""
        if auth_header.startswith("Bearer "):
            presented = auth_header[len("Bearer "):].strip()
    return bool(presented) and hmac.compare_digest(presented.encode(), configured.encode())

async def cron_route_guard(request: Request) -> None:
    """Guard for cron trigger routes."""
    if not _configured_cron_secret():
        logger.error("CRON_SECRET not set - cron trigger disabled")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron not configured"
        )
    if not cron_secret_ok(request):
        logger.warning("Cron trigger rejected: missing or invalid secret on %s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
