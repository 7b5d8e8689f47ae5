from fastapi import APIRouter

from . import conversations, messages, realtime

router = APIRouter()
router.include_router(conversations.router)
router.include_router(messages.router)
router.include_router(realtime.router)
