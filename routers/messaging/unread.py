"""Unread counters derived from per-recipient read rows.

A message counts as unread for a user when someone else sent it, it is not
blocked, and the user has no read row for it. Nothing here is cached, so the
numbers always agree with the read state written by ``service``.
"""

from typing import Iterable

from sqlalchemy.orm import Session

from . import repository as messaging_repository


def unread_count_for(db: Session, *, conversation_id, user_id: int) -> int:
    return messaging_repository.count_unread_for_conversation(
        db, conversation_id=conversation_id, user_id=user_id
    )


def unread_counts_for_conversations(db: Session, *, conversation_ids: Iterable, user_id: int) -> dict:
    """Counts keyed by conversation id; conversations with nothing unread map to 0."""
    conversation_ids = list(conversation_ids)
    counts = messaging_repository.count_unread_for_conversations(
        db, conversation_ids=conversation_ids, user_id=user_id
    )
    return {cid: counts.get(cid, 0) for cid in conversation_ids}


def total_unread_for(db: Session, *, user_id: int) -> int:
    return messaging_repository.count_total_unread(db, user_id=user_id)
