"""Messaging/Realtime service layer."""

import logging
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from fastapi import BackgroundTasks, HTTPException, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import (
    GROUP_MAX_MEMBERS,
    GROUP_MIN_MEMBERS,
    GROUP_NAME_MAX_LENGTH,
    LAST_MESSAGE_PREVIEW_LENGTH,
    MESSAGE_SEND_BURST_LIMIT,
    MESSAGE_SEND_BURST_WINDOW_SECONDS,
    MESSAGE_SEND_MAX_PER_MINUTE,
)
from core.rate_limit import default_rate_limiter
from core.users import get_user_by_id, get_user_map, public_profile
from utils.message_sanitizer import sanitize_message

from . import fanout
from . import repository as messaging_repository
from . import unread as unread_aggregator
from .errors import (
    Forbidden,
    InvalidGroupComposition,
    InvalidIdentifier,
    NotAMember,
    NotFound,
    NotGroupConversation,
    RateLimited,
)

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def parse_uuid(value, label: str = "conversation") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidIdentifier(f"Invalid {label} ID")


# --- Serialization ---


def is_read_by_recipients(message, conversation) -> bool:
    """Direct: the other member read it. Group: every other current member read it."""
    recipients = [uid for uid in conversation.member_ids if uid != message.sender_id]
    if not recipients:
        return False
    readers = message.reader_ids
    if conversation.is_group:
        return all(uid in readers for uid in recipients)
    return any(uid in readers for uid in recipients)


def serialize_message(message, conversation) -> dict:
    location = None
    if message.location_lat is not None and message.location_lng is not None:
        location = {
            "name": message.location_name,
            "lat": message.location_lat,
            "lng": message.location_lng,
        }

    reply_to = None
    if message.reply_to is not None:
        reply_to = {
            "id": str(message.reply_to.id),
            "message_text": message.reply_to.message_text,
            "sender_id": message.reply_to.sender_id,
        }

    return {
        "id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "sender": public_profile(message.sender),
        "message_text": message.message_text,
        "message_type": message.message_type,
        "media_url": message.media_url,
        "location": location,
        "read": is_read_by_recipients(message, conversation),
        "read_by": [
            {"user_id": read.user_id, "read_at": _iso(read.read_at)}
            for read in sorted(message.reads, key=lambda r: r.read_at)
        ],
        "is_delivered": bool(message.is_delivered),
        "reply_to": reply_to,
        "reactions": [
            {"user_id": r.user_id, "emoji": r.emoji, "created_at": _iso(r.created_at)}
            for r in message.reactions
        ],
        "client_message_id": message.client_message_id,
        "created_at": _iso(message.created_at),
        "updated_at": _iso(message.updated_at),
    }


def serialize_conversation(conversation, *, unread_count: Optional[int] = None) -> dict:
    data = {
        "id": str(conversation.id),
        "is_group": bool(conversation.is_group),
        "group_name": conversation.group_name,
        "group_admin_id": conversation.group_admin_id,
        "members": [public_profile(member.user) for member in conversation.members if member.user],
        "member_count": len(conversation.members),
        "last_message": conversation.last_message,
        "last_message_by": conversation.last_message_by,
        "last_message_at": _iso(conversation.last_message_at),
        "is_active": bool(conversation.is_active),
        "created_at": _iso(conversation.created_at),
        "updated_at": _iso(conversation.updated_at),
    }
    if unread_count is not None:
        data["unread_count"] = unread_count
    return data


# --- Lookups ---


def _get_active_conversation(db, conversation_id):
    conversation = messaging_repository.get_conversation(
        db, conversation_id=parse_uuid(conversation_id)
    )
    if not conversation or not conversation.is_active:
        raise NotFound("Conversation not found")
    return conversation


def get_member_conversation(db, *, conversation_id, user_id: int):
    conversation = _get_active_conversation(db, conversation_id)
    if not conversation.is_member(user_id):
        raise NotAMember()
    return conversation


def _get_visible_message(db, message_id):
    message = messaging_repository.get_message(db, message_id=parse_uuid(message_id, "message"))
    if not message or message.is_blocked:
        raise NotFound("Message not found")
    return message


def _commit(db, action: str):
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to {action}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action}",
        )


# --- Conversation directory ---


def find_or_create_direct_conversation(db, *, current_user, peer_user_id: int):
    """Return ``(conversation, created)``; at most one direct row ever exists per pair."""
    if peer_user_id == current_user.account_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot create conversation with yourself",
        )

    peer_user = get_user_by_id(db, account_id=peer_user_id)
    if not peer_user:
        raise NotFound("User not found")

    user_ids = sorted([current_user.account_id, peer_user_id])
    pair_key = messaging_repository.direct_pair_key(*user_ids)

    existing = messaging_repository.get_direct_conversation_by_pair_key(db, pair_key=pair_key)
    if not existing:
        existing = messaging_repository.find_direct_conversation_between_users(db, user_ids=user_ids)

    if existing:
        if not existing.is_active:
            existing.is_active = True
            _commit(db, "reopen conversation")
            logger.info(f"Reopened direct conversation {existing.id}")
        return existing, False

    now = datetime.utcnow()
    conversation = messaging_repository.create_conversation(
        db, is_group=False, pair_key=pair_key, created_at=now
    )
    try:
        db.flush()
    except IntegrityError:
        # A concurrent request created the pair first.
        db.rollback()
        winner = messaging_repository.get_direct_conversation_by_pair_key(
            db, pair_key=pair_key
        ) or messaging_repository.find_direct_conversation_between_users(db, user_ids=user_ids)
        if not winner:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to create conversation",
            )
        logger.info(f"Direct conversation {pair_key} created concurrently, reusing {winner.id}")
        return winner, False

    for user_id in user_ids:
        messaging_repository.add_member(db, conversation=conversation, user_id=user_id, joined_at=now)
    _commit(db, "create conversation")
    db.refresh(conversation)

    logger.info(f"Created direct conversation {conversation.id} for {pair_key}")
    return conversation, True


def create_group_conversation(db, *, current_user, group_name: Optional[str], member_ids: Iterable[int]):
    name = (group_name or "").strip()
    if not name:
        raise InvalidGroupComposition("Group name is required")
    if len(name) > GROUP_NAME_MAX_LENGTH:
        raise InvalidGroupComposition(
            f"Group name must be at most {GROUP_NAME_MAX_LENGTH} characters"
        )

    creator_id = current_user.account_id
    all_member_ids = [creator_id] + [
        uid for uid in dict.fromkeys(member_ids or []) if uid != creator_id
    ]
    if len(all_member_ids) < GROUP_MIN_MEMBERS:
        raise InvalidGroupComposition(
            f"Group conversations need at least {GROUP_MIN_MEMBERS} members including the creator"
        )
    if len(all_member_ids) > GROUP_MAX_MEMBERS:
        raise InvalidGroupComposition(
            f"Group conversations can have at most {GROUP_MAX_MEMBERS} members"
        )

    users = get_user_map(db, account_ids=all_member_ids)
    missing = [uid for uid in all_member_ids if uid not in users]
    if missing:
        raise NotFound(f"Users not found: {', '.join(str(uid) for uid in missing)}")

    now = datetime.utcnow()
    conversation = messaging_repository.create_conversation(
        db,
        is_group=True,
        group_name=name,
        group_admin_id=creator_id,
        created_at=now,
    )
    for user_id in all_member_ids:
        messaging_repository.add_member(db, conversation=conversation, user_id=user_id, joined_at=now)
    _commit(db, "create group conversation")
    db.refresh(conversation)

    logger.info(
        f"Created group conversation {conversation.id} with {len(all_member_ids)} members by {creator_id}"
    )
    return conversation


def list_conversations(db, *, current_user, page: int, limit: int):
    conversations = messaging_repository.list_user_conversations(
        db, user_id=current_user.account_id, limit=limit + 1, offset=(page - 1) * limit
    )
    has_more = len(conversations) > limit
    conversations = conversations[:limit]

    unread_counts = unread_aggregator.unread_counts_for_conversations(
        db, conversation_ids=[c.id for c in conversations], user_id=current_user.account_id
    )
    return {
        "conversations": [
            serialize_conversation(c, unread_count=unread_counts.get(c.id, 0)) for c in conversations
        ],
        "pagination": {"page": page, "limit": limit, "has_more": has_more},
    }


def search_conversations(db, *, current_user, query: str, limit: int = 20):
    term = (query or "").strip()
    if not term:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Search query is required"
        )
    conversations = messaging_repository.search_user_conversations(
        db, user_id=current_user.account_id, term=term, limit=limit
    )
    unread_counts = unread_aggregator.unread_counts_for_conversations(
        db, conversation_ids=[c.id for c in conversations], user_id=current_user.account_id
    )
    return {
        "conversations": [
            serialize_conversation(c, unread_count=unread_counts.get(c.id, 0)) for c in conversations
        ]
    }


def add_group_members(db, *, current_user, conversation_id, user_ids: Iterable[int]):
    conversation = _get_active_conversation(db, conversation_id)
    if not conversation.is_group:
        raise NotGroupConversation()
    if not conversation.is_member(current_user.account_id):
        raise NotAMember("Only conversation members can add new members")

    requested = list(dict.fromkeys(user_ids))
    users = get_user_map(db, account_ids=requested)
    missing = [uid for uid in requested if uid not in users]
    if missing:
        raise NotFound(f"Users not found: {', '.join(str(uid) for uid in missing)}")

    new_ids = [uid for uid in requested if not conversation.is_member(uid)]
    if len(conversation.members) + len(new_ids) > GROUP_MAX_MEMBERS:
        raise InvalidGroupComposition(
            f"Group conversations can have at most {GROUP_MAX_MEMBERS} members"
        )

    now = datetime.utcnow()
    for user_id in new_ids:
        messaging_repository.add_member(db, conversation=conversation, user_id=user_id, joined_at=now)
    conversation.updated_at = now
    _commit(db, "add group members")
    db.refresh(conversation)

    logger.info(f"Added {len(new_ids)} member(s) to group {conversation.id}")
    return conversation


def remove_group_member(db, *, current_user, conversation_id, user_id: int):
    conversation = _get_active_conversation(db, conversation_id)
    if not conversation.is_group:
        raise NotGroupConversation()
    if current_user.account_id not in (conversation.group_admin_id, user_id):
        raise Forbidden("Only the group admin can remove other members")

    member = messaging_repository.get_member(conversation, user_id=user_id)
    if not member:
        raise NotFound("Member not found")
    if len(conversation.members) - 1 < GROUP_MIN_MEMBERS:
        raise InvalidGroupComposition(
            f"Group conversations need at least {GROUP_MIN_MEMBERS} members"
        )

    conversation.members.remove(member)
    if conversation.group_admin_id == user_id:
        conversation.group_admin_id = conversation.members[0].user_id
    conversation.updated_at = datetime.utcnow()
    _commit(db, "remove group member")
    db.refresh(conversation)

    logger.info(f"Removed user {user_id} from group {conversation.id}")
    return conversation


def archive_conversation(db, *, current_user, conversation_id):
    conversation = get_member_conversation(
        db, conversation_id=conversation_id, user_id=current_user.account_id
    )
    if conversation.is_group and conversation.group_admin_id != current_user.account_id:
        raise Forbidden("Only the group admin can archive a group")

    conversation.is_active = False
    _commit(db, "archive conversation")
    logger.info(f"Archived conversation {conversation.id}")
    return {"conversation_id": str(conversation.id), "is_active": False}


def update_last_message_summary(conversation, message) -> None:
    """Point the denormalized summary at ``message`` (caller commits)."""
    text = message.message_text or ""
    if len(text) > LAST_MESSAGE_PREVIEW_LENGTH:
        text = text[: LAST_MESSAGE_PREVIEW_LENGTH - 3] + "..."
    conversation.last_message = text
    conversation.last_message_by = message.sender_id
    conversation.last_message_at = message.created_at


def refresh_last_message_summary(db, conversation) -> None:
    latest = messaging_repository.get_latest_visible_message(db, conversation_id=conversation.id)
    if latest:
        update_last_message_summary(conversation, latest)
    else:
        conversation.last_message = None
        conversation.last_message_by = None
        conversation.last_message_at = None


# --- Message store ---


def _enforce_send_rate_limit(user_id: int, conversation_id) -> None:
    minute_rl = default_rate_limiter.allow(
        key=f"rl:messages:minute:{user_id}",
        limit=MESSAGE_SEND_MAX_PER_MINUTE,
        window_seconds=60,
    )
    if not minute_rl.allowed:
        raise RateLimited(
            f"Rate limit exceeded. Maximum {MESSAGE_SEND_MAX_PER_MINUTE} messages per minute.",
            retry_after_seconds=minute_rl.retry_after_seconds,
        )
    burst_rl = default_rate_limiter.allow(
        key=f"rl:messages:burst:{user_id}:{conversation_id}",
        limit=MESSAGE_SEND_BURST_LIMIT,
        window_seconds=MESSAGE_SEND_BURST_WINDOW_SECONDS,
    )
    if not burst_rl.allowed:
        raise RateLimited(
            f"Burst rate limit exceeded. Maximum {MESSAGE_SEND_BURST_LIMIT} messages "
            f"per {MESSAGE_SEND_BURST_WINDOW_SECONDS} seconds.",
            retry_after_seconds=burst_rl.retry_after_seconds,
        )


def _resolve_reply_to(db, conversation, reply_to: Optional[str]):
    """Replies that point outside the conversation are dropped; the message still sends."""
    if not reply_to:
        return None
    try:
        reply_uuid = uuid.UUID(str(reply_to))
    except ValueError:
        logger.info(f"Ignoring malformed reply_to {reply_to!r} in conversation {conversation.id}")
        return None
    target = messaging_repository.get_visible_message_in_conversation(
        db, message_id=reply_uuid, conversation_id=conversation.id
    )
    if not target:
        logger.info(f"Ignoring reply_to {reply_uuid} outside conversation {conversation.id}")
        return None
    return target.id


def send_message(db, *, current_user, conversation_id, request, background_tasks: BackgroundTasks):
    conversation = get_member_conversation(
        db, conversation_id=conversation_id, user_id=current_user.account_id
    )

    if request.client_message_id:
        existing = messaging_repository.get_message_by_client_id(
            db,
            conversation_id=conversation.id,
            sender_id=current_user.account_id,
            client_message_id=request.client_message_id,
        )
        if existing:
            return {"message": serialize_message(existing, conversation), "duplicate": True}

    message_text = sanitize_message(request.message_text)
    if not message_text:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Message text is required"
        )

    _enforce_send_rate_limit(current_user.account_id, conversation.id)

    reply_to_id = _resolve_reply_to(db, conversation, request.reply_to)
    location = request.location.model_dump() if request.location else None

    message = messaging_repository.create_message(
        db,
        conversation_id=conversation.id,
        sender_id=current_user.account_id,
        message_text=message_text,
        message_type=request.message_type,
        media_url=request.media_url,
        location=location,
        reply_to_id=reply_to_id,
        client_message_id=request.client_message_id,
        is_delivered=True,
        created_at=datetime.utcnow(),
    )
    if request.client_message_id:
        try:
            db.flush()
        except IntegrityError:
            # A concurrent resend with the same client id was stored first.
            db.rollback()
            winner = messaging_repository.get_message_by_client_id(
                db,
                conversation_id=conversation.id,
                sender_id=current_user.account_id,
                client_message_id=request.client_message_id,
            )
            if not winner:
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Failed to send message",
                )
            logger.info(f"Resend {request.client_message_id} raced, reusing message {winner.id}")
            return {"message": serialize_message(winner, conversation), "duplicate": True}
    update_last_message_summary(conversation, message)
    _commit(db, "send message")
    db.refresh(message)

    payload = serialize_message(message, conversation)
    background_tasks.add_task(fanout.publish_message, payload, conversation.member_ids)

    logger.debug(
        f"Message {message.id} sent by {current_user.account_id} to conversation {conversation.id}"
    )
    return {"message": payload, "duplicate": False}


def list_messages(db, *, conversation, page: int, limit: int):
    """One page, newest page first, messages within the page oldest first."""
    rows = messaging_repository.list_messages_page(
        db, conversation_id=conversation.id, limit=limit + 1, offset=(page - 1) * limit
    )
    has_more = len(rows) > limit
    rows = rows[:limit]
    rows.reverse()
    return {
        "messages": [serialize_message(m, conversation) for m in rows],
        "pagination": {"page": page, "limit": limit, "has_more": has_more},
    }


def _mark_read(db, *, conversation, user_id: int, retry: bool = True) -> List:
    message_ids = messaging_repository.list_unread_message_ids(
        db, conversation_id=conversation.id, user_id=user_id
    )
    if not message_ids:
        return []
    messaging_repository.insert_reads(
        db, message_ids=message_ids, user_id=user_id, read_at=datetime.utcnow()
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if not retry:
            raise
        # Another reader inserted some of these rows first; pick up what is left.
        logger.info(f"Concurrent read marking in conversation {conversation.id}, retrying")
        return _mark_read(db, conversation=conversation, user_id=user_id, retry=False)
    return message_ids


def get_conversation_messages(
    db, *, current_user, conversation_id, page: int, limit: int, background_tasks: BackgroundTasks
):
    """Fetch a page of history; opening a conversation reads everything in it."""
    conversation = get_member_conversation(
        db, conversation_id=conversation_id, user_id=current_user.account_id
    )
    newly_read = _mark_read(db, conversation=conversation, user_id=current_user.account_id)
    if newly_read:
        background_tasks.add_task(
            fanout.publish_read_receipt,
            str(conversation.id),
            [str(mid) for mid in newly_read],
            current_user.account_id,
        )

    page_data = list_messages(db, conversation=conversation, page=page, limit=limit)
    return {
        "conversation": serialize_conversation(
            conversation,
            unread_count=unread_aggregator.unread_count_for(
                db, conversation_id=conversation.id, user_id=current_user.account_id
            ),
        ),
        **page_data,
    }


def mark_conversation_read(db, *, current_user, conversation_id, background_tasks: BackgroundTasks):
    conversation = get_member_conversation(
        db, conversation_id=conversation_id, user_id=current_user.account_id
    )
    newly_read = [str(mid) for mid in _mark_read(db, conversation=conversation, user_id=current_user.account_id)]
    if newly_read:
        background_tasks.add_task(
            fanout.publish_read_receipt, str(conversation.id), newly_read, current_user.account_id
        )
    return {
        "conversation_id": str(conversation.id),
        "marked_count": len(newly_read),
        "message_ids": newly_read,
    }


def mark_message_read(db, *, current_user, message_id, background_tasks: BackgroundTasks):
    message = _get_visible_message(db, message_id)
    conversation = messaging_repository.get_conversation(db, conversation_id=message.conversation_id)
    if not conversation or not conversation.is_member(current_user.account_id):
        raise NotAMember("Not authorized to mark this message as read")

    if message.sender_id == current_user.account_id:
        return {"message_id": str(message.id), "read_at": None}

    read = messaging_repository.get_read(db, message_id=message.id, user_id=current_user.account_id)
    if not read:
        messaging_repository.insert_reads(
            db, message_ids=[message.id], user_id=current_user.account_id, read_at=datetime.utcnow()
        )
        _commit(db, "mark message as read")
        background_tasks.add_task(
            fanout.publish_read_receipt,
            str(conversation.id),
            [str(message.id)],
            current_user.account_id,
        )
        read = messaging_repository.get_read(db, message_id=message.id, user_id=current_user.account_id)

    return {"message_id": str(message.id), "read_at": _iso(read.read_at) if read else None}


def _get_member_message(db, *, current_user, message_id):
    message = _get_visible_message(db, message_id)
    conversation = messaging_repository.get_conversation(db, conversation_id=message.conversation_id)
    if not conversation or not conversation.is_member(current_user.account_id):
        raise NotAMember("Not authorized to react to this message")
    return message, conversation


def add_reaction(db, *, current_user, message_id, emoji: str):
    message, conversation = _get_member_message(db, current_user=current_user, message_id=message_id)

    now = datetime.utcnow()
    reaction = messaging_repository.get_reaction(db, message_id=message.id, user_id=current_user.account_id)
    if reaction:
        reaction.emoji = emoji
        reaction.created_at = now
    else:
        messaging_repository.create_reaction(
            db, message=message, user_id=current_user.account_id, emoji=emoji, created_at=now
        )
    try:
        db.commit()
    except IntegrityError:
        # Lost an insert race with another request from the same user; update theirs.
        db.rollback()
        reaction = messaging_repository.get_reaction(
            db, message_id=message.id, user_id=current_user.account_id
        )
        if reaction:
            reaction.emoji = emoji
            reaction.created_at = now
        _commit(db, "add reaction")

    db.refresh(message)
    return serialize_message(message, conversation)


def remove_reaction(db, *, current_user, message_id):
    message, conversation = _get_member_message(db, current_user=current_user, message_id=message_id)
    removed = messaging_repository.delete_reaction(
        db, message_id=message.id, user_id=current_user.account_id
    )
    _commit(db, "remove reaction")
    if not removed:
        logger.debug(f"No reaction by {current_user.account_id} on message {message.id}")
    db.refresh(message)
    return serialize_message(message, conversation)


def delete_message(db, *, current_user, message_id, background_tasks: BackgroundTasks):
    message = messaging_repository.get_message(db, message_id=parse_uuid(message_id, "message"))
    if not message:
        raise NotFound("Message not found")
    conversation = messaging_repository.get_conversation(db, conversation_id=message.conversation_id)
    if not conversation or not conversation.is_member(current_user.account_id):
        raise NotAMember("Not authorized to delete this message")
    if message.sender_id != current_user.account_id:
        raise Forbidden("Not authorized to delete this message")

    deleted_id = message.id

    messaging_repository.clear_reply_links(db, message_id=deleted_id)
    messaging_repository.delete_message(db, message=message)
    db.flush()
    refresh_last_message_summary(db, conversation)
    _commit(db, "delete message")

    background_tasks.add_task(
        fanout.publish_message_deleted,
        str(conversation.id),
        str(deleted_id),
        conversation.member_ids,
    )
    logger.info(f"Message {deleted_id} deleted by {current_user.account_id}")
    return {"message_id": str(deleted_id), "deleted": True}


def block_message(db, *, current_user, message_id, reason: Optional[str]):
    message = messaging_repository.get_message(db, message_id=parse_uuid(message_id, "message"))
    if not message:
        raise NotFound("Message not found")

    message.is_blocked = True
    message.blocked_reason = reason
    message.blocked_by = current_user.account_id
    db.flush()

    conversation = messaging_repository.get_conversation(db, conversation_id=message.conversation_id)
    refresh_last_message_summary(db, conversation)
    _commit(db, "block message")

    logger.info(f"Message {message.id} blocked by admin {current_user.account_id}")
    return {"message_id": str(message.id), "is_blocked": True, "blocked_reason": reason}


def get_unread_count(db, *, current_user):
    return {"unread_count": unread_aggregator.total_unread_for(db, user_id=current_user.account_id)}
