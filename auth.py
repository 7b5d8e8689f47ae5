import logging
import time
from typing import Optional

import jwt
from fastapi import HTTPException, status

from config import (
    JWT_ACCESS_TOKEN_EXPIRE_SECONDS,
    JWT_ALGORITHM,
    JWT_LEEWAY_SECONDS,
    JWT_SECRET_KEY,
)

logger = logging.getLogger(__name__)


def create_access_token(account_id: int, expires_in: Optional[int] = None, **claims) -> str:
    """Mint an access token for ``account_id``. Used by tooling and tests."""
    now = int(time.time())
    payload = {
        "sub": str(account_id),
        "iat": now,
        "exp": now + (expires_in or JWT_ACCESS_TOKEN_EXPIRE_SECONDS),
    }
    payload.update(claims)
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Validate a bearer token and return its claims.

    Raises a 401 HTTPException when the token is expired, malformed or signed
    with the wrong key.
    """
    try:
        claims = jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            leeway=JWT_LEEWAY_SECONDS,
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Token validation failed: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    if not claims.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    return claims


def account_id_from_claims(claims: dict) -> int:
    try:
        return int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")
