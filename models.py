import random
import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

MESSAGE_TYPES = ("text", "image", "video", "file", "location")


def generate_account_id():
    """Generate a 10-digit random unique number."""
    return int("".join(str(random.randint(1, 9)) for _ in range(10)))


# =================================
#  Users Table (owned by the profile service, read-only here)
# =================================
class User(Base):
    __tablename__ = "users"

    account_id = Column(BigInteger, primary_key=True, index=True, default=generate_account_id)
    email = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    profile_pic_url = Column(String, nullable=True)
    is_admin = Column(Boolean, default=False)
    sign_up_date = Column(DateTime, default=datetime.utcnow, nullable=False)


# =================================
#  Conversations Table
# =================================
class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    is_group = Column(Boolean, nullable=False, default=False)
    group_name = Column(String(100), nullable=True)
    group_admin_id = Column(BigInteger, ForeignKey("users.account_id"), nullable=True)
    # "<low>:<high>" account ids for direct conversations; NULL for groups
    pair_key = Column(String, unique=True, nullable=True)

    # Denormalized summary of the newest message
    last_message = Column(String(200), nullable=True)
    last_message_by = Column(BigInteger, ForeignKey("users.account_id"), nullable=True)
    last_message_at = Column(DateTime, nullable=True, index=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    members = relationship(
        "ConversationMember",
        back_populates="conversation",
        order_by="ConversationMember.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    group_admin = relationship("User", foreign_keys=[group_admin_id])
    last_message_sender = relationship("User", foreign_keys=[last_message_by])

    @property
    def member_ids(self):
        return [member.user_id for member in self.members]

    def is_member(self, user_id: int) -> bool:
        return any(member.user_id == user_id for member in self.members)


class ConversationMember(Base):
    __tablename__ = "conversation_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Uuid(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True)
    user_id = Column(BigInteger, ForeignKey("users.account_id"), nullable=False, index=True)
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="members")
    user = relationship("User", lazy="joined")

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_members_conversation_user"),
    )


# =================================
#  Messages Table
# =================================
class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(BigInteger, ForeignKey("users.account_id"), nullable=False, index=True)
    message_text = Column(Text, nullable=False)
    message_type = Column(String(16), nullable=False, default="text")
    media_url = Column(String, nullable=True)
    location_name = Column(String, nullable=True)
    location_lat = Column(Float, nullable=True)
    location_lng = Column(Float, nullable=True)
    is_delivered = Column(Boolean, nullable=False, default=False)
    reply_to_id = Column(Uuid(as_uuid=True), ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)
    client_message_id = Column(String, nullable=True, index=True)  # For idempotent resends

    # Admin moderation
    is_blocked = Column(Boolean, nullable=False, default=False, index=True)
    blocked_reason = Column(String, nullable=True)
    blocked_by = Column(BigInteger, ForeignKey("users.account_id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    sender = relationship("User", foreign_keys=[sender_id], lazy="joined")
    reply_to = relationship("Message", remote_side=[id], foreign_keys=[reply_to_id])
    reads = relationship(
        "MessageRead", back_populates="message", cascade="all, delete-orphan", lazy="selectin"
    )
    reactions = relationship(
        "MessageReaction",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="MessageReaction.created_at",
        lazy="selectin",
    )

    @property
    def reader_ids(self):
        return {read.user_id for read in self.reads}

    __table_args__ = (
        # NULL client ids never collide
        UniqueConstraint(
            "conversation_id", "sender_id", "client_message_id", name="uq_messages_conversation_sender_client_id"
        ),
    )


class MessageRead(Base):
    __tablename__ = "message_reads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Uuid(as_uuid=True), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(BigInteger, ForeignKey("users.account_id"), nullable=False, index=True)
    read_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    message = relationship("Message", back_populates="reads")

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_reads_message_user"),
    )


class MessageReaction(Base):
    __tablename__ = "message_reactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Uuid(as_uuid=True), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(BigInteger, ForeignKey("users.account_id"), nullable=False)
    emoji = Column(String(32), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    message = relationship("Message", back_populates="reactions")

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_reactions_message_user"),
    )
