import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from auth import account_id_from_claims, decode_access_token
from core.db import get_db
from core.users import get_user_by_id
from models import User

logger = logging.getLogger(__name__)


def extract_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authorization token missing.")
    return auth_header.split(" ", 1)[1].strip()


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve the caller's profile row from a bearer token."""
    claims = decode_access_token(token)
    user = get_user_by_id(db, account_id=account_id_from_claims(claims))
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    Extracts and validates the bearer JWT from the Authorization header and
    returns the caller's User row.
    """
    return get_user_from_token(extract_bearer_token(request), db)


def is_admin(user: User) -> bool:
    return bool(user.is_admin)


def verify_admin(user: User):
    if not is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required for this endpoint",
        )


def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    verify_admin(current_user)
    return current_user
