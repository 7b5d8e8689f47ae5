"""Messaging/Realtime schemas."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from config import MESSAGE_MAX_LENGTH, REACTION_MAX_LENGTH

MessageType = Literal["text", "image", "video", "file", "location"]


class CreateConversationRequest(BaseModel):
    user_id: Optional[int] = Field(
        None, description="Peer user for a direct conversation", example=1142961859
    )
    is_group: bool = Field(False, example=False)
    group_name: Optional[str] = Field(None, example="Lisbon crew")
    member_ids: List[int] = Field(
        default_factory=list,
        description="Other members of a group conversation",
        example=[1142961859, 9876543210],
    )

    @model_validator(mode="after")
    def _require_target(self):
        if not self.is_group and self.user_id is None:
            raise ValueError("user_id is required for direct conversations")
        return self


class LocationPayload(BaseModel):
    name: Optional[str] = None
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class SendMessageRequest(BaseModel):
    message_text: str = Field(..., min_length=1, max_length=MESSAGE_MAX_LENGTH)
    message_type: MessageType = "text"
    media_url: Optional[str] = Field(None, example="https://cdn.example.com/photo.jpg")
    location: Optional[LocationPayload] = None
    reply_to: Optional[str] = Field(
        None,
        description="ID of a message in the same conversation",
        example="550e8400-e29b-41d4-a716-446655440000",
    )
    client_message_id: Optional[str] = Field(
        None, max_length=64, description="Client-provided ID for idempotency", example="msg_1234567890"
    )

    @field_validator("message_text")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message text is required")
        return value

    @model_validator(mode="after")
    def _check_payload(self):
        if self.message_type == "location" and self.location is None:
            raise ValueError("location is required for location messages")
        if self.message_type in ("image", "video", "file") and not self.media_url:
            raise ValueError(f"media_url is required for {self.message_type} messages")
        return self


class AddReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=REACTION_MAX_LENGTH, example="👍")

    @field_validator("emoji")
    @classmethod
    def _strip_emoji(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Emoji is required")
        return value


class AddMembersRequest(BaseModel):
    user_ids: List[int] = Field(..., min_length=1, example=[1142961859])


class BlockMessageRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, example="Spam")


class UserSummary(BaseModel):
    user_id: int
    username: str
    full_name: Optional[str] = None
    profile_pic_url: Optional[str] = None


class ReadReceipt(BaseModel):
    user_id: int
    read_at: str


class Reaction(BaseModel):
    user_id: int
    emoji: str
    created_at: str


class ReplyPreview(BaseModel):
    id: str
    message_text: str
    sender_id: int


class MessageEnvelope(BaseModel):
    id: str
    conversation_id: str
    sender: Optional[UserSummary] = None
    message_text: str
    message_type: str
    media_url: Optional[str] = None
    location: Optional[dict] = None
    read: bool
    read_by: List[ReadReceipt]
    is_delivered: bool
    reply_to: Optional[ReplyPreview] = None
    reactions: List[Reaction]
    client_message_id: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None


class SendMessageResponse(BaseModel):
    message: MessageEnvelope
    duplicate: bool


class Pagination(BaseModel):
    page: int
    limit: int
    has_more: bool


class ConversationEnvelope(BaseModel):
    id: str
    is_group: bool
    group_name: Optional[str] = None
    group_admin_id: Optional[int] = None
    members: List[UserSummary]
    member_count: int
    last_message: Optional[str] = None
    last_message_by: Optional[int] = None
    last_message_at: Optional[str] = None
    is_active: bool
    created_at: str
    updated_at: Optional[str] = None
    unread_count: Optional[int] = None


class CreateConversationResponse(BaseModel):
    conversation: ConversationEnvelope
    created: bool


class ConversationListResponse(BaseModel):
    conversations: List[ConversationEnvelope]
    pagination: Pagination


class ConversationSearchResponse(BaseModel):
    conversations: List[ConversationEnvelope]


class ConversationMessagesResponse(BaseModel):
    conversation: ConversationEnvelope
    messages: List[MessageEnvelope]
    pagination: Pagination


class MarkConversationReadResponse(BaseModel):
    conversation_id: str
    marked_count: int
    message_ids: List[str]


class MarkReadResponse(BaseModel):
    message_id: str
    read_at: Optional[str] = None


class DeleteMessageResponse(BaseModel):
    message_id: str
    deleted: bool


class BlockMessageResponse(BaseModel):
    message_id: str
    is_blocked: bool
    blocked_reason: Optional[str] = None


class ArchiveConversationResponse(BaseModel):
    conversation_id: str
    is_active: bool


class UnreadCountResponse(BaseModel):
    unread_count: int
