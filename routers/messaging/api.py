from fastapi import APIRouter

from config import PRESENCE_ENABLED

from . import chats, messages, realtime

router = APIRouter()
router.include_router(chats.router)
router.include_router(messages.router)
if PRESENCE_ENABLED:
    router.include_router(realtime.router)
