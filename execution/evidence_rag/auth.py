"""
Session JWT Verification

Sign-in and token issuance live in the account service. This module only
verifies the HS256 session token that service issues and extracts the user id.
"""

import os
import logging
from typing import Optional

import jwt

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


def _get_jwt_secret() -> str:
    val = os.getenv("JWT_SECRET", "")
    if not val:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Set it in .env or as an environment variable."
        )
    return val


def verify_session_jwt(token: str) -> Optional[dict]:
    """
    Verify a session JWT and extract user info.

    Returns:
        Dict with user_id and email if valid; None if invalid/expired
    """
    try:
        payload = jwt.decode(token, _get_jwt_secret(), algorithms=[JWT_ALGORITHM])
        return {
            "user_id": payload["sub"],
            "email": payload.get("email", ""),
        }
    except jwt.ExpiredSignatureError:
        logger.debug("JWT expired")
        return None
    except (jwt.InvalidTokenError, KeyError) as e:
        logger.debug(f"JWT invalid: {e}")
        return None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
