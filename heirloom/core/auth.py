"""
Auth utilities for the Heirloom API.

Validates HS256 JWTs issued by the auth service and extracts user_id.
Falls back to X-User-Id header when ALLOW_USER_ID_HEADER is on (dev/tests).
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
from heirloom.core.config import settings
import jwt
import logging

logger = logging.getLogger(__name__)


def _algorithms() -> list:
    return [alg.strip() for alg in settings.JWT_ALGORITHMS.split(",") if alg.strip()]


def verify_jwt(token: str) -> Optional[str]:
    """
    Verify a bearer JWT and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id from the 'sub' claim, or None when no JWT_SECRET is configured

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.JWT_SECRET:
        logger.debug("No JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=_algorithms(),
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(user_id)


def _upsert_user(user_id: str, email: Optional[str] = None) -> None:
    from heirloom.features.users.service import get_or_create_user
    try:
        get_or_create_user(user_id, email=email)
    except Exception as e:
        # Don't block auth if the upsert fails
        logger.warning(f"Failed to upsert user {user_id}: {e}")


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. JWT from Authorization header
    2. X-User-Id header (when allowed)
    3. Raise 401 Unauthorized

    After successful auth, upsert user into database.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_jwt(auth_header[7:].strip())
        if user_id:
            _upsert_user(user_id)
            return user_id

    if x_user_id and settings.ALLOW_USER_ID_HEADER:
        _upsert_user(x_user_id)
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )
