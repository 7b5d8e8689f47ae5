"""Messaging/Realtime repository layer."""

from sqlalchemy.orm import Session


def direct_pair_key(user_a: int, user_b: int) -> str:
    low, high = sorted((int(user_a), int(user_b)))
    return f"{low}:{high}"


# --- Conversations ---


def get_conversation(db: Session, *, conversation_id):
    from models import Conversation

    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def get_direct_conversation_by_pair_key(db: Session, *, pair_key: str):
    from models import Conversation

    return (
        db.query(Conversation)
        .filter(Conversation.pair_key == pair_key, Conversation.is_group.is_(False))
        .first()
    )


def find_direct_conversation_between_users(db: Session, *, user_ids):
    """Fallback for direct rows written before pair keys were backfilled."""
    from sqlalchemy import func

    from models import Conversation, ConversationMember

    return (
        db.query(Conversation)
        .join(ConversationMember, Conversation.id == ConversationMember.conversation_id)
        .filter(
            Conversation.is_group.is_(False),
            ConversationMember.user_id.in_(list(user_ids)),
        )
        .group_by(Conversation.id)
        .having(func.count(func.distinct(ConversationMember.user_id)) == 2)
        .first()
    )


def create_conversation(
    db: Session,
    *,
    is_group: bool,
    created_at,
    pair_key=None,
    group_name=None,
    group_admin_id=None,
):
    from models import Conversation

    conversation = Conversation(
        is_group=is_group,
        pair_key=pair_key,
        group_name=group_name,
        group_admin_id=group_admin_id,
        is_active=True,
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(conversation)
    return conversation


def add_member(db: Session, *, conversation, user_id: int, joined_at):
    from models import ConversationMember

    member = ConversationMember(user_id=user_id, joined_at=joined_at)
    conversation.members.append(member)
    return member


def get_member(conversation, *, user_id: int):
    for member in conversation.members:
        if member.user_id == user_id:
            return member
    return None


def _user_conversations_query(db: Session, *, user_id: int):
    from models import Conversation, ConversationMember

    return (
        db.query(Conversation)
        .join(ConversationMember, Conversation.id == ConversationMember.conversation_id)
        .filter(ConversationMember.user_id == user_id, Conversation.is_active.is_(True))
    )


def list_user_conversations(db: Session, *, user_id: int, limit: int, offset: int):
    from sqlalchemy import func

    from models import Conversation

    return (
        _user_conversations_query(db, user_id=user_id)
        .order_by(
            func.coalesce(Conversation.last_message_at, Conversation.created_at).desc(),
            Conversation.created_at.desc(),
        )
        .offset(offset)
        .limit(limit)
        .all()
    )


def search_user_conversations(db: Session, *, user_id: int, term: str, limit: int):
    """Match group names and the usernames/full names of other members."""
    from sqlalchemy import func, or_

    from models import Conversation, ConversationMember, User

    pattern = f"%{term.lower()}%"
    matching_ids = (
        db.query(ConversationMember.conversation_id)
        .join(User, User.account_id == ConversationMember.user_id)
        .filter(
            ConversationMember.user_id != user_id,
            or_(
                func.lower(User.username).like(pattern),
                func.lower(func.coalesce(User.full_name, "")).like(pattern),
            ),
        )
    )
    return (
        _user_conversations_query(db, user_id=user_id)
        .filter(
            or_(
                func.lower(func.coalesce(Conversation.group_name, "")).like(pattern),
                Conversation.id.in_(matching_ids),
            )
        )
        .order_by(func.coalesce(Conversation.last_message_at, Conversation.created_at).desc())
        .limit(limit)
        .all()
    )


# --- Messages ---


def get_message(db: Session, *, message_id):
    from models import Message

    return db.query(Message).filter(Message.id == message_id).first()


def get_visible_message_in_conversation(db: Session, *, message_id, conversation_id):
    from models import Message

    return (
        db.query(Message)
        .filter(
            Message.id == message_id,
            Message.conversation_id == conversation_id,
            Message.is_blocked.is_(False),
        )
        .first()
    )


def get_message_by_client_id(db: Session, *, conversation_id, sender_id: int, client_message_id: str):
    from models import Message

    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.sender_id == sender_id,
            Message.client_message_id == client_message_id,
        )
        .first()
    )


def create_message(
    db: Session,
    *,
    conversation_id,
    sender_id: int,
    message_text: str,
    message_type: str,
    created_at,
    media_url=None,
    location=None,
    reply_to_id=None,
    client_message_id=None,
    is_delivered: bool = True,
):
    from models import Message

    location = location or {}
    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        message_text=message_text,
        message_type=message_type,
        media_url=media_url,
        location_name=location.get("name"),
        location_lat=location.get("lat"),
        location_lng=location.get("lng"),
        reply_to_id=reply_to_id,
        client_message_id=client_message_id,
        is_delivered=is_delivered,
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(message)
    return message


def list_messages_page(db: Session, *, conversation_id, limit: int, offset: int):
    from sqlalchemy import desc

    from models import Message

    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.is_blocked.is_(False))
        .order_by(desc(Message.created_at), desc(Message.id))
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_latest_visible_message(db: Session, *, conversation_id):
    from sqlalchemy import desc

    from models import Message

    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.is_blocked.is_(False))
        .order_by(desc(Message.created_at), desc(Message.id))
        .first()
    )


def clear_reply_links(db: Session, *, message_id) -> int:
    from models import Message

    return (
        db.query(Message)
        .filter(Message.reply_to_id == message_id)
        .update({Message.reply_to_id: None}, synchronize_session=False)
    )


def delete_message(db: Session, *, message):
    db.delete(message)


# --- Read state ---


def _unread_criteria(user_id: int):
    from sqlalchemy import and_, exists

    from models import Message, MessageRead

    already_read = exists().where(
        and_(MessageRead.message_id == Message.id, MessageRead.user_id == user_id)
    )
    return (
        Message.sender_id != user_id,
        Message.is_blocked.is_(False),
        ~already_read,
    )


def list_unread_message_ids(db: Session, *, conversation_id, user_id: int):
    from models import Message

    rows = (
        db.query(Message.id)
        .filter(Message.conversation_id == conversation_id, *_unread_criteria(user_id))
        .order_by(Message.created_at.asc())
        .all()
    )
    return [row[0] for row in rows]


def get_read(db: Session, *, message_id, user_id: int):
    from models import MessageRead

    return (
        db.query(MessageRead)
        .filter(MessageRead.message_id == message_id, MessageRead.user_id == user_id)
        .first()
    )


def insert_reads(db: Session, *, message_ids, user_id: int, read_at):
    """Insert read rows, skipping any a concurrent reader already wrote."""
    from models import MessageRead

    rows = [
        {"message_id": message_id, "user_id": user_id, "read_at": read_at}
        for message_id in message_ids
    ]
    if not rows:
        return

    dialect_name = db.bind.dialect.name if db.bind else ""
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert

        stmt = pg_insert(MessageRead).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        db.execute(stmt)
        return
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert

        stmt = sqlite_insert(MessageRead).values(rows).prefix_with("OR IGNORE")
        db.execute(stmt)
        return

    db.bulk_save_objects([MessageRead(**row) for row in rows])


def count_unread_for_conversation(db: Session, *, conversation_id, user_id: int) -> int:
    from sqlalchemy import func

    from models import Message

    return (
        db.query(func.count(Message.id))
        .filter(Message.conversation_id == conversation_id, *_unread_criteria(user_id))
        .scalar()
        or 0
    )


def count_unread_for_conversations(db: Session, *, conversation_ids, user_id: int) -> dict:
    from sqlalchemy import func

    from models import Message

    conversation_ids = list(conversation_ids)
    if not conversation_ids:
        return {}
    rows = (
        db.query(Message.conversation_id, func.count(Message.id))
        .filter(Message.conversation_id.in_(conversation_ids), *_unread_criteria(user_id))
        .group_by(Message.conversation_id)
        .all()
    )
    return {cid: count for cid, count in rows}


def count_total_unread(db: Session, *, user_id: int) -> int:
    from sqlalchemy import and_, func

    from models import Conversation, ConversationMember, Message

    return (
        db.query(func.count(Message.id))
        .join(
            ConversationMember,
            and_(
                ConversationMember.conversation_id == Message.conversation_id,
                ConversationMember.user_id == user_id,
            ),
        )
        .join(Conversation, Conversation.id == Message.conversation_id)
        .filter(Conversation.is_active.is_(True), *_unread_criteria(user_id))
        .scalar()
        or 0
    )


# --- Reactions ---


def get_reaction(db: Session, *, message_id, user_id: int):
    from models import MessageReaction

    return (
        db.query(MessageReaction)
        .filter(MessageReaction.message_id == message_id, MessageReaction.user_id == user_id)
        .first()
    )


def create_reaction(db: Session, *, message, user_id: int, emoji: str, created_at):
    from models import MessageReaction

    reaction = MessageReaction(user_id=user_id, emoji=emoji, created_at=created_at)
    message.reactions.append(reaction)
    return reaction


def delete_reaction(db: Session, *, message_id, user_id: int) -> int:
    from models import MessageReaction

    return (
        db.query(MessageReaction)
        .filter(MessageReaction.message_id == message_id, MessageReaction.user_id == user_id)
        .delete(synchronize_session=False)
    )
