"""
WebSocket endpoint for realtime chat events.

Clients connect to ``/ws?token=<jwt>`` (or send a bearer header) and are
subscribed to their own user room straight away. Frames in both directions
are JSON objects shaped ``{"event": <name>, "data": {...}}``.

Client events:
    join-user-room      {"user_id"}            only the caller's own room
    join-conversation   {"conversation_id"}    members only
    leave-conversation  {"conversation_id"}
    typing              {"conversation_id", "is_typing"}
    ping                {}
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from core.db import get_db_context
from core.logging import bind_realtime_session
from routers.dependencies import get_user_from_token

from . import fanout
from . import repository as messaging_repository
from .errors import InvalidIdentifier
from .service import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

WS_CLOSE_UNAUTHORIZED = 4401


def _token_from_headers(websocket: WebSocket) -> Optional[str]:
    auth_header = websocket.headers.get("authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1].strip()
    return None


def _authenticate(token: Optional[str]) -> int:
    if not token:
        raise HTTPException(status_code=401, detail="Missing token")
    with get_db_context() as db:
        return get_user_from_token(token, db).account_id


def _is_member(conversation_id, user_id: int) -> bool:
    with get_db_context() as db:
        conversation = messaging_repository.get_conversation(db, conversation_id=conversation_id)
        return bool(conversation and conversation.is_active and conversation.is_member(user_id))


async def _send_error(websocket: WebSocket, code: str, detail: str) -> None:
    await websocket.send_json(fanout.build_event("error", {"code": code, "detail": detail}))


def _conversation_id_from(payload: dict):
    return parse_uuid(payload.get("conversation_id"))


async def _handle_frame(websocket: WebSocket, session: fanout.RealtimeSession, frame: dict) -> None:
    event = frame.get("event")
    payload = frame.get("data")
    if not isinstance(payload, dict):
        payload = frame

    if event == "ping":
        await websocket.send_json(fanout.build_event("pong", {}))
        return

    if event == "join-user-room":
        requested = payload.get("user_id", session.user_id)
        if str(requested) != str(session.user_id):
            await _send_error(websocket, "FORBIDDEN", "Cannot join another user's room")
            return
        channel = fanout.user_channel(session.user_id)
        fanout.manager.join(session, channel)
        await websocket.send_json(fanout.build_event("joined", {"channel": channel}))
        return

    if event in ("join-conversation", "leave-conversation", "typing"):
        try:
            conversation_id = _conversation_id_from(payload)
        except InvalidIdentifier as e:
            await _send_error(websocket, e.code, e.detail)
            return
        channel = fanout.conversation_channel(conversation_id)

        if event == "leave-conversation":
            fanout.manager.leave(session, channel)
            await websocket.send_json(fanout.build_event("left", {"channel": channel}))
            return

        if event == "join-conversation":
            if not await run_in_threadpool(_is_member, conversation_id, session.user_id):
                await _send_error(websocket, "NOT_A_MEMBER", "Not a member of this conversation")
                return
            fanout.manager.join(session, channel)
            await websocket.send_json(fanout.build_event("joined", {"channel": channel}))
            return

        # typing: only relayed into rooms this session has joined
        if channel not in session.channels:
            await _send_error(websocket, "NOT_JOINED", "Join the conversation before sending typing events")
            return
        await fanout.publish_typing(
            str(conversation_id),
            session.user_id,
            bool(payload.get("is_typing", True)),
            exclude_session_id=session.session_id,
        )
        return

    await _send_error(websocket, "UNKNOWN_EVENT", f"Unknown event: {event}")


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    try:
        user_id = await run_in_threadpool(_authenticate, token or _token_from_headers(websocket))
    except HTTPException as e:
        logger.info(f"Rejected realtime connection: {e.detail}")
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return

    await websocket.accept()
    session = fanout.manager.connect(websocket, user_id)
    bind_realtime_session(session.session_id)
    try:
        await websocket.send_json(
            fanout.build_event("connected", {"session_id": session.session_id, "user_id": user_id})
        )
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await _send_error(websocket, "INVALID_FRAME", "Frames must be JSON objects")
                continue
            if not isinstance(frame, dict):
                await _send_error(websocket, "INVALID_FRAME", "Frames must be JSON objects")
                continue
            await _handle_frame(websocket, session, frame)
    except WebSocketDisconnect:
        logger.debug(f"Realtime session {session.session_id} closed by client")
    finally:
        fanout.manager.disconnect(session)
