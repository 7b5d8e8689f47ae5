"""User lookup facade.

The messaging domain never owns user rows. Profile data (username, avatar) is
read through these helpers only, for caller resolution and display enrichment.
"""

from typing import Iterable

from sqlalchemy.orm import Session

from models import User


def get_user_by_id(db: Session, *, account_id: int):
    return db.query(User).filter(User.account_id == account_id).first()


def get_users_by_ids(db: Session, *, account_ids: Iterable[int]):
    account_ids = list(set(account_ids))
    if not account_ids:
        return []
    return db.query(User).filter(User.account_id.in_(account_ids)).all()


def get_user_map(db: Session, *, account_ids: Iterable[int]) -> dict:
    return {user.account_id: user for user in get_users_by_ids(db, account_ids=account_ids)}


def public_profile(user) -> dict:
    """Display fields exposed on sender/member references."""
    if user is None:
        return None
    return {
        "user_id": user.account_id,
        "username": user.username,
        "full_name": user.full_name,
        "profile_pic_url": user.profile_pic_url,
    }
