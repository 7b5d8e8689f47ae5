from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from routers.dependencies import get_admin_user, get_current_user

router = APIRouter(tags=["Messages"])

from .schemas import (
    AddReactionRequest,
    BlockMessageRequest,
    BlockMessageResponse,
    DeleteMessageResponse,
    MarkReadResponse,
    MessageEnvelope,
    UnreadCountResponse,
)
from .service import (
    add_reaction as service_add_reaction,
    block_message as service_block_message,
    delete_message as service_delete_message,
    get_unread_count as service_get_unread_count,
    mark_message_read as service_mark_message_read,
    remove_reaction as service_remove_reaction,
)


@router.put("/messages/{message_id}/read", response_model=MarkReadResponse)
async def mark_message_read(
    message_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    """Mark one message read. Idempotent; the sender's own messages are a no-op."""
    return service_mark_message_read(
        db, current_user=current_user, message_id=message_id, background_tasks=background_tasks
    )


@router.delete("/messages/{message_id}", response_model=DeleteMessageResponse)
async def delete_message(
    message_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    """Hard-delete a message. Only its sender may do this."""
    return service_delete_message(
        db, current_user=current_user, message_id=message_id, background_tasks=background_tasks
    )


@router.post("/messages/{message_id}/reactions", response_model=MessageEnvelope)
async def add_reaction(
    message_id: str,
    request: AddReactionRequest,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    """Set the caller's reaction, replacing any previous one."""
    return service_add_reaction(
        db, current_user=current_user, message_id=message_id, emoji=request.emoji
    )


@router.delete("/messages/{message_id}/reactions", response_model=MessageEnvelope)
async def remove_reaction(
    message_id: str,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    return service_remove_reaction(db, current_user=current_user, message_id=message_id)


@router.post("/messages/{message_id}/block", response_model=BlockMessageResponse)
async def block_message(
    message_id: str,
    request: BlockMessageRequest,
    db: Session = Depends(get_db),
    admin_user = Depends(get_admin_user),
):
    """Admin only: hide a message from history and unread counts."""
    return service_block_message(
        db, current_user=admin_user, message_id=message_id, reason=request.reason
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user),
):
    """Total unread messages across the caller's active conversations."""
    return service_get_unread_count(db, current_user=current_user)
