"""
Request identity.

Bearer tokens are HS256 JWTs signed with AUTH_JWT_SECRET; the user id is the
`sub` claim. The X-User-Id header is accepted as a fallback for local
single-user setups and tests.
"""
import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, Request

from quickbill.core.config import settings

logger = logging.getLogger(__name__)


def verify_jwt(token: str) -> Optional[str]:
    """
    Verify a Bearer token and extract user_id.

    Returns None when no AUTH_JWT_SECRET is configured.

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
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
    return user_id


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Fallback user ID for local setups"),
) -> str:
    """
    Priority:
    1. JWT from Authorization header
    2. X-User-Id header
    3. 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_jwt(auth_header[7:])
        if user_id:
            request.state.user_id = user_id
            return user_id

    if x_user_id:
        request.state.user_id = x_user_id
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )
