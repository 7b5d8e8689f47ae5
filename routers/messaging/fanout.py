"""Realtime fan-out hub.

Sessions subscribe to named channels (``user:<account_id>`` and
``conversation:<uuid>``). A publish targets a set of channels and every
session subscribed to at least one of them gets the event exactly once.

With ``REALTIME_BACKEND=redis`` publishes go through one Redis channel and
each worker relays envelopes to its own local sessions, so API processes can
scale horizontally. Publishing never raises: a dropped event must not fail
the write that produced it.
"""
import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from config import REALTIME_BACKEND
from utils.redis_pubsub import publish_envelope, subscribe_envelopes

logger = logging.getLogger(__name__)

EVENT_NEW_MESSAGE = "new-message"
EVENT_MESSAGE_READ = "message-read"
EVENT_USER_TYPING = "user-typing"
EVENT_MESSAGE_DELETED = "message-deleted"


def user_channel(user_id) -> str:
    return f"user:{user_id}"


def conversation_channel(conversation_id) -> str:
    return f"conversation:{conversation_id}"


def build_event(name: str, data: dict) -> dict:
    return {"event": name, "data": data}


@dataclass(eq=False)
class RealtimeSession:
    websocket: WebSocket
    user_id: int
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    channels: Set[str] = field(default_factory=set)


class ConnectionManager:
    """Tracks live sessions per channel for this worker.

    Meant for a single event loop; all bookkeeping happens between awaits.
    """

    def __init__(self):
        self._sessions: Dict[str, RealtimeSession] = {}
        self._channels: Dict[str, Set[str]] = defaultdict(set)

    def connect(self, websocket: WebSocket, user_id: int) -> RealtimeSession:
        session = RealtimeSession(websocket=websocket, user_id=user_id)
        self._sessions[session.session_id] = session
        self.join(session, user_channel(user_id))
        logger.info(f"Realtime session {session.session_id} connected for user {user_id}")
        return session

    def join(self, session: RealtimeSession, channel: str) -> None:
        session.channels.add(channel)
        self._channels[channel].add(session.session_id)

    def leave(self, session: RealtimeSession, channel: str) -> None:
        session.channels.discard(channel)
        members = self._channels.get(channel)
        if members is not None:
            members.discard(session.session_id)
            if not members:
                del self._channels[channel]

    def disconnect(self, session: RealtimeSession) -> None:
        for channel in list(session.channels):
            self.leave(session, channel)
        if self._sessions.pop(session.session_id, None) is not None:
            logger.info(f"Realtime session {session.session_id} disconnected for user {session.user_id}")

    def sessions_for(
        self, channels: Iterable[str], exclude_session_id: Optional[str] = None
    ) -> List[RealtimeSession]:
        """Union of sessions subscribed to any of ``channels``, deduplicated."""
        seen: Set[str] = set()
        targets = []
        for channel in channels:
            for session_id in self._channels.get(channel, ()):
                if session_id in seen or session_id == exclude_session_id:
                    continue
                seen.add(session_id)
                session = self._sessions.get(session_id)
                if session is not None:
                    targets.append(session)
        return targets

    def channel_size(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def deliver(
        self, channels: Iterable[str], event: dict, exclude_session_id: Optional[str] = None
    ) -> int:
        targets = self.sessions_for(channels, exclude_session_id)
        if not targets:
            return 0

        results = await asyncio.gather(
            *(session.websocket.send_json(event) for session in targets),
            return_exceptions=True,
        )
        delivered = 0
        for session, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Dropping dead realtime session {session.session_id}: {result}")
                self.disconnect(session)
            else:
                delivered += 1
        return delivered

    def reset(self) -> None:
        self._sessions.clear()
        self._channels.clear()


manager = ConnectionManager()


async def _dispatch(channels: List[str], event: dict, exclude_session_id: Optional[str] = None) -> None:
    try:
        if REALTIME_BACKEND == "redis":
            await publish_envelope(
                {"channels": channels, "event": event, "exclude": exclude_session_id}
            )
        else:
            await manager.deliver(channels, event, exclude_session_id)
    except Exception as e:
        logger.error(f"Failed to publish {event.get('event')} to {len(channels)} channel(s): {e}")


async def publish_message(message: dict, member_ids: Iterable[int]) -> None:
    """Push a newly sent message to the conversation room and every member's user room."""
    channels = [conversation_channel(message["conversation_id"])]
    channels.extend(user_channel(member_id) for member_id in member_ids)
    await _dispatch(channels, build_event(EVENT_NEW_MESSAGE, message))


async def publish_typing(
    conversation_id: str, user_id: int, is_typing: bool, exclude_session_id: Optional[str] = None
) -> None:
    await _dispatch(
        [conversation_channel(conversation_id)],
        build_event(
            EVENT_USER_TYPING,
            {"conversation_id": str(conversation_id), "user_id": user_id, "is_typing": bool(is_typing)},
        ),
        exclude_session_id,
    )


async def publish_read_receipt(conversation_id: str, message_ids: List[str], reader_id: int) -> None:
    await _dispatch(
        [conversation_channel(conversation_id)],
        build_event(
            EVENT_MESSAGE_READ,
            {
                "conversation_id": str(conversation_id),
                "message_ids": [str(message_id) for message_id in message_ids],
                "reader_id": reader_id,
            },
        ),
    )


async def publish_message_deleted(conversation_id: str, message_id: str, member_ids: Iterable[int]) -> None:
    channels = [conversation_channel(conversation_id)]
    channels.extend(user_channel(member_id) for member_id in member_ids)
    await _dispatch(
        channels,
        build_event(
            EVENT_MESSAGE_DELETED,
            {"conversation_id": str(conversation_id), "message_id": str(message_id)},
        ),
    )


async def run_redis_relay() -> None:
    """Relay envelopes from Redis to the sessions connected to this worker."""
    logger.info("Starting realtime Redis relay")
    async for envelope in subscribe_envelopes():
        channels = envelope.get("channels") or []
        event = envelope.get("event")
        if not event:
            continue
        try:
            await manager.deliver(channels, event, envelope.get("exclude"))
        except Exception as e:
            logger.error(f"Relay delivery failed for {event.get('event')}: {e}")
