"""
Bearer-token authentication against Supabase Auth.

The gateway only needs a stable user identifier before any extraction or
upstream work begins; it never inspects other claims.

Performance notes:
- get_current_user verifies JWTs locally with python-jose when SUPABASE_JWT_SECRET
  is set, skipping the round-trip to the Supabase Auth API on every chat request.
"""

import logging
import os
from typing import Optional

from fastapi import Header
from jose import jwt, JWTError, ExpiredSignatureError

from auraiq.db import supabase
from auraiq.errors import AuthError

logger = logging.getLogger(__name__)

# Loaded once at startup. When not set, tokens are verified remotely.
SUPABASE_JWT_SECRET: Optional[str] = os.environ.get("SUPABASE_JWT_SECRET") or None


def _extract_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthError("Not authenticated", error_code="missing_token")

    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise AuthError("Invalid authentication credentials", error_code="malformed_token")

    return parts[1]


async def get_current_user(authorization: Optional[str] = Header(None)) -> str:
    """
    Resolve the caller's user id from the Authorization header.

    Args:
        authorization: Authorization header with format "Bearer <token>"

    Returns:
        user_id: the token's subject

    Raises:
        AuthError: 401 if the token is missing, malformed, invalid, or expired
    """
    token = _extract_bearer_token(authorization)

    if SUPABASE_JWT_SECRET:
        return _verify_jwt_locally(token)

    return await _verify_jwt_remotely(token)


def _verify_jwt_locally(token: str) -> str:
    """Verify an HS256 Supabase JWT with the project secret and return its ``sub``."""
    try:
        payload = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},  # Supabase tokens carry the 'authenticated' role, not a fixed audience
        )
    except ExpiredSignatureError:
        raise AuthError("Token expired", error_code="token_expired")
    except JWTError:
        raise AuthError("Invalid token", error_code="invalid_token")

    user_id: Optional[str] = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token", error_code="invalid_token")

    return user_id


async def _verify_jwt_remotely(token: str) -> str:
    """Verify a token through the Supabase Auth API (used when no JWT secret is set)."""
    try:
        response = supabase.auth.get_user(token)
    except Exception as e:
        logger.info(f"Token verification failed: {e}")
        if "expired" in str(e).lower():
            raise AuthError("Token expired", error_code="token_expired")
        raise AuthError("Invalid token", error_code="invalid_token")

    if not response or not response.user:
        raise AuthError("Invalid token", error_code="invalid_token")

    return response.user.id
