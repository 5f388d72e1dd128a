"""Bearer credential issuing and verification (HS256 JWT)."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from shared.config import get_jwt_secret

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24


def create_access_token(
    user_id: str,
    secret: Optional[str] = None,
    expires_in: timedelta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
) -> str:
    """Issue a bearer credential whose subject is the user id."""
    payload = {
        "sub": str(user_id),
        "type": "access",
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, secret or get_jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_access_token(token: Optional[str], secret: Optional[str] = None) -> Optional[str]:
    """
    Verify a bearer credential.

    Args:
        token: Encoded JWT
        secret: Signing secret (defaults to JWT_SECRET)

    Returns:
        The user id, or None if the token is missing, expired or invalid
    """
    if not token:
        return None

    try:
        payload = jwt.decode(token, secret or get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.debug("Bearer token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid bearer token: {e}")
        return None

    if payload.get("type") != "access":
        logger.warning(f"Token type mismatch: expected access, got {payload.get('type')}")
        return None

    return payload.get("sub")


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token part of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def create_state_token(user_id: str, kind: str, secret: Optional[str] = None) -> str:
    """Signed OAuth ``state`` binding the consent round trip to a user and connection kind."""
    payload = {
        "sub": str(user_id),
        "kind": kind,
        "type": "oauth_state",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=15),
    }
    return jwt.encode(payload, secret or get_jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_state_token(state: Optional[str], secret: Optional[str] = None) -> Optional[dict]:
    """Return ``{"user_id", "kind"}`` for a valid state token, else None."""
    if not state:
        return None
    try:
        payload = jwt.decode(state, secret or get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid OAuth state: {e}")
        return None
    if payload.get("type") != "oauth_state":
        return None
    return {"user_id": payload.get("sub"), "kind": payload.get("kind")}
