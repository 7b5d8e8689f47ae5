"""
Client-side conversation state.

Keeps the conversation directory, the open conversation's messages and the
typing indicators for one signed-in user. State lives on the instance; feed
realtime frames in through ``apply_event``.

Optimistic sends are appended as ``pending`` entries carrying a generated
``client_message_id`` and replaced in place once the server reply or the
live echo with the same id arrives. Echoes without a correlation id fall back
to matching a pending entry from the same sender with the same text created
within ``ECHO_MATCH_WINDOW_SECONDS`` (the most recent such entry wins).
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .api import MessagingAPIError, MessagingClient

logger = logging.getLogger(__name__)

ECHO_MATCH_WINDOW_SECONDS = 10
PREVIEW_LENGTH = 200

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"


def _parse_ts(value) -> datetime:
    if not value:
        return datetime.min
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return datetime.min


def _preview(text: str) -> str:
    text = text or ""
    if len(text) > PREVIEW_LENGTH:
        return text[: PREVIEW_LENGTH - 3] + "..."
    return text


def _sender_id(message: Dict[str, Any]) -> Optional[int]:
    sender = message.get("sender") or {}
    return sender.get("user_id")


class ConversationView:
    def __init__(
        self,
        api: MessagingClient,
        current_user_id: int,
        *,
        page_size: int = 50,
        mark_read_on_receive: bool = True,
    ):
        self.api = api
        self.current_user_id = current_user_id
        self.page_size = page_size
        self.mark_read_on_receive = mark_read_on_receive

        self.conversations: List[Dict[str, Any]] = []
        self.active_conversation_id: Optional[str] = None
        self.messages: List[Dict[str, Any]] = []
        self.has_more = False
        self.typing_users: Set[int] = set()
        self._page = 0

    # --- Directory ---

    @property
    def total_unread(self) -> int:
        return sum(c.get("unread_count") or 0 for c in self.conversations)

    def refresh_conversations(self, page: int = 1, limit: int = 20) -> List[Dict[str, Any]]:
        data = self.api.list_conversations(page=page, limit=limit)
        if page == 1:
            self.conversations = list(data["conversations"])
        else:
            known = {c["id"] for c in self.conversations}
            self.conversations.extend(c for c in data["conversations"] if c["id"] not in known)
        if self.active_conversation_id:
            active = self.get_conversation(self.active_conversation_id)
            if active is not None:
                active["unread_count"] = 0
        self._sort_conversations()
        return self.conversations

    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        for conversation in self.conversations:
            if conversation["id"] == conversation_id:
                return conversation
        return None

    def _sort_conversations(self) -> None:
        self.conversations.sort(
            key=lambda c: _parse_ts(c.get("last_message_at") or c.get("created_at")),
            reverse=True,
        )

    def _upsert_conversation(self, conversation: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.get_conversation(conversation["id"])
        if existing is None:
            self.conversations.append(dict(conversation))
            existing = self.conversations[-1]
        else:
            existing.update(conversation)
        self._sort_conversations()
        return existing

    def _bump_conversation(self, message: Dict[str, Any], *, count_unread: bool) -> None:
        conversation = self.get_conversation(message["conversation_id"])
        if conversation is None:
            # Unknown conversation (e.g. a new group): the directory carries the counts.
            self.refresh_conversations()
            return
        conversation["last_message"] = _preview(message.get("message_text"))
        conversation["last_message_by"] = _sender_id(message)
        conversation["last_message_at"] = message.get("created_at")
        if count_unread:
            conversation["unread_count"] = (conversation.get("unread_count") or 0) + 1
        self._sort_conversations()

    # --- Active conversation ---

    def open_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        data = self.api.get_conversation(conversation_id, page=1, limit=self.page_size)
        self.active_conversation_id = conversation_id
        self.messages = [dict(m, local_status=STATUS_SENT) for m in data["messages"]]
        self.has_more = data["pagination"]["has_more"]
        self.typing_users = set()
        self._page = 1

        conversation = self._upsert_conversation(data["conversation"])
        conversation["unread_count"] = 0
        return self.messages

    def close_conversation(self) -> None:
        self.active_conversation_id = None
        self.messages = []
        self.has_more = False
        self.typing_users = set()
        self._page = 0

    def load_older(self) -> int:
        """Prepend the next older page; returns how many messages were added."""
        if not self.active_conversation_id or not self.has_more:
            return 0
        data = self.api.get_conversation(
            self.active_conversation_id, page=self._page + 1, limit=self.page_size
        )
        known = {m.get("id") for m in self.messages if m.get("id")}
        older = [dict(m, local_status=STATUS_SENT) for m in data["messages"] if m["id"] not in known]
        self.messages[:0] = older
        self._page += 1
        self.has_more = data["pagination"]["has_more"]
        return len(older)

    def send_text(
        self,
        text: str,
        *,
        message_type: str = "text",
        media_url: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.active_conversation_id:
            raise RuntimeError("No conversation is open")
        conversation_id = self.active_conversation_id

        pending = {
            "id": None,
            "conversation_id": conversation_id,
            "sender": {"user_id": self.current_user_id},
            "message_text": text,
            "message_type": message_type,
            "media_url": media_url,
            "reply_to": {"id": reply_to} if reply_to else None,
            "client_message_id": uuid.uuid4().hex,
            "created_at": datetime.utcnow().isoformat(),
            "local_status": STATUS_PENDING,
        }
        self.messages.append(pending)

        try:
            result = self.api.send_message(
                conversation_id,
                text,
                message_type=message_type,
                media_url=media_url,
                reply_to=reply_to,
                client_message_id=pending["client_message_id"],
            )
        except MessagingAPIError:
            pending["local_status"] = STATUS_FAILED
            raise

        message = self._merge_message(result["message"])
        self._bump_conversation(message, count_unread=False)
        return message

    def _find_by_id(self, message_id) -> Optional[int]:
        for index, existing in enumerate(self.messages):
            if existing.get("id") == message_id:
                return index
        return None

    def _find_pending(self, message: Dict[str, Any]) -> Optional[int]:
        client_message_id = message.get("client_message_id")
        if client_message_id:
            for index, existing in enumerate(self.messages):
                if existing.get("id") is None and existing.get("client_message_id") == client_message_id:
                    return index

        sender_id = _sender_id(message)
        if sender_id != self.current_user_id:
            return None
        created_at = _parse_ts(message.get("created_at"))
        for index in range(len(self.messages) - 1, -1, -1):
            existing = self.messages[index]
            if existing.get("local_status") != STATUS_PENDING:
                continue
            if client_message_id and existing.get("client_message_id"):
                continue
            if existing.get("message_text") != message.get("message_text"):
                continue
            delta = abs((_parse_ts(existing.get("created_at")) - created_at).total_seconds())
            if delta <= ECHO_MATCH_WINDOW_SECONDS:
                return index
        return None

    def _merge_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        entry = dict(message, local_status=STATUS_SENT)
        index = self._find_by_id(message["id"])
        if index is None:
            index = self._find_pending(message)
        if index is None:
            self.messages.append(entry)
        else:
            self.messages[index] = entry
        return entry

    # --- Realtime ---

    def apply_event(self, event: Dict[str, Any]) -> None:
        name = event.get("event")
        data = event.get("data") or {}
        if name == "new-message":
            self._on_new_message(data)
        elif name == "message-read":
            self._on_message_read(data)
        elif name == "user-typing":
            self._on_user_typing(data)
        elif name == "message-deleted":
            self._on_message_deleted(data)
        else:
            logger.debug(f"Ignoring realtime event {name}")

    def _on_new_message(self, message: Dict[str, Any]) -> None:
        sender_id = _sender_id(message)
        from_peer = sender_id != self.current_user_id

        if message["conversation_id"] != self.active_conversation_id:
            self._bump_conversation(message, count_unread=from_peer)
            return

        self._merge_message(message)
        self._bump_conversation(message, count_unread=False)
        self.typing_users.discard(sender_id)
        if from_peer and self.mark_read_on_receive:
            try:
                self.api.mark_conversation_read(message["conversation_id"])
            except MessagingAPIError as e:
                logger.warning(f"Could not mark {message['conversation_id']} read: {e}")

    def _on_message_read(self, data: Dict[str, Any]) -> None:
        if data.get("conversation_id") != self.active_conversation_id:
            return
        reader_id = data.get("reader_id")
        message_ids = set(data.get("message_ids") or [])
        conversation = self.get_conversation(self.active_conversation_id) or {}
        member_ids = [m["user_id"] for m in conversation.get("members") or []]

        for message in self.messages:
            if message.get("id") not in message_ids:
                continue
            read_by = message.setdefault("read_by", [])
            if all(r.get("user_id") != reader_id for r in read_by):
                read_by.append({"user_id": reader_id, "read_at": datetime.utcnow().isoformat()})
            readers = {r.get("user_id") for r in read_by}
            recipients = [uid for uid in member_ids if uid != _sender_id(message)] or [reader_id]
            if conversation.get("is_group"):
                message["read"] = all(uid in readers for uid in recipients)
            else:
                message["read"] = any(uid in readers for uid in recipients)

    def _on_user_typing(self, data: Dict[str, Any]) -> None:
        if data.get("conversation_id") != self.active_conversation_id:
            return
        user_id = data.get("user_id")
        if user_id == self.current_user_id:
            return
        if data.get("is_typing"):
            self.typing_users.add(user_id)
        else:
            self.typing_users.discard(user_id)

    def _on_message_deleted(self, data: Dict[str, Any]) -> None:
        if data.get("conversation_id") != self.active_conversation_id:
            return
        self.messages = [m for m in self.messages if m.get("id") != data.get("message_id")]
