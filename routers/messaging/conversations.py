from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from config import CONVERSATION_PAGE_SIZE_DEFAULT, MESSAGE_PAGE_SIZE_DEFAULT, MESSAGE_PAGE_SIZE_MAX
from core.db import get_db
from routers.dependencies import get_current_user

router = APIRouter(prefix="/conversations", tags=["Conversations"])

from .schemas import (
    AddMembersRequest,
    ArchiveConversationResponse,
    ConversationEnvelope,
    ConversationListResponse,
    ConversationMessagesResponse,
    ConversationSearchResponse,
    CreateConversationRequest,
    CreateConversationResponse,
    MarkConversationReadResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from .service import (
    add_group_members as service_add_group_members,
    archive_conversation as service_archive_conversation,
    create_group_conversation as service_create_group_conversation,
    find_or_create_direct_conversation as service_find_or_create_direct_conversation,
    get_conversation_messages as service_get_conversation_messages,
    list_conversations as service_list_conversations,
    mark_conversation_read as service_mark_conversation_read,
    remove_group_member as service_remove_group_member,
    search_conversations as service_search_conversations,
    send_message as service_send_message,
    serialize_conversation,
)


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(CONVERSATION_PAGE_SIZE_DEFAULT, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    """
    List the caller's active conversations, most recent activity first,
    each with its unread count.
    """
    return service_list_conversations(db, current_user=current_user, page=page, limit=limit)


@router.post("", response_model=CreateConversationResponse)
async def create_conversation(
    request: CreateConversationRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    """
    Create a group conversation, or find/create the direct conversation with
    ``user_id``. Direct creation is idempotent.
    """
    if request.is_group:
        conversation = service_create_group_conversation(
            db,
            current_user=current_user,
            group_name=request.group_name,
            member_ids=request.member_ids,
        )
        created = True
    else:
        conversation, created = service_find_or_create_direct_conversation(
            db, current_user=current_user, peer_user_id=request.user_id
        )
    return {"conversation": serialize_conversation(conversation, unread_count=0), "created": created}


@router.get("/search", response_model=ConversationSearchResponse)
async def search_conversations(
    q: str = Query(..., min_length=1, max_length=100),
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    """Search the caller's conversations by group name or member name."""
    return service_search_conversations(db, current_user=current_user, query=q)


@router.get("/{conversation_id}", response_model=ConversationMessagesResponse)
async def get_conversation(
    conversation_id: str,
    background_tasks: BackgroundTasks,
    page: int = Query(1, ge=1),
    limit: int = Query(MESSAGE_PAGE_SIZE_DEFAULT, ge=1, le=MESSAGE_PAGE_SIZE_MAX),
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    """
    Get a page of messages. Page 1 is the newest; each page is ordered
    oldest to newest. Marks the conversation read for the caller.
    """
    return service_get_conversation_messages(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        page=page,
        limit=limit,
        background_tasks=background_tasks,
    )


@router.post("/{conversation_id}/messages", response_model=SendMessageResponse, status_code=201)
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    """
    Send a message. Resending with the same ``client_message_id`` returns the
    stored message with ``duplicate: true``.
    """
    return service_send_message(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        request=request,
        background_tasks=background_tasks,
    )


@router.put("/{conversation_id}/read", response_model=MarkConversationReadResponse)
async def mark_conversation_read(
    conversation_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    return service_mark_conversation_read(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        background_tasks=background_tasks,
    )


@router.post("/{conversation_id}/members", response_model=ConversationEnvelope)
async def add_members(
    conversation_id: str,
    request: AddMembersRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    conversation = service_add_group_members(
        db, current_user=current_user, conversation_id=conversation_id, user_ids=request.user_ids
    )
    return serialize_conversation(conversation)


@router.delete("/{conversation_id}/members/{user_id}", response_model=ConversationEnvelope)
async def remove_member(
    conversation_id: str,
    user_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    """Admins remove anyone; members may remove themselves (leave)."""
    conversation = service_remove_group_member(
        db, current_user=current_user, conversation_id=conversation_id, user_id=user_id
    )
    return serialize_conversation(conversation)


@router.post("/{conversation_id}/archive", response_model=ArchiveConversationResponse)
async def archive_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    return service_archive_conversation(
        db, current_user=current_user, conversation_id=conversation_id
    )
