from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from core.db import get_db
from models import User
from routers.dependencies import get_broadcaster, get_current_user
from utils.fanout import Broadcaster

from .service import (
    get_group_chat_id as service_get_group_chat_id,
    get_private_chat_id as service_get_private_chat_id,
    list_chats as service_list_chats,
    list_messages as service_list_messages,
    mark_seen as service_mark_seen,
)

router = APIRouter(prefix="/chats", tags=["Chats"])


@router.get("")
async def list_chats(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """List my chats, most recently active first."""
    return service_list_chats(db, current_user=current_user, page=page, limit=limit)


@router.get("/private/{user_id}")
async def get_private_chat(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Chat ID shared with another user, or null if we never talked."""
    return service_get_private_chat_id(db, current_user=current_user, user_id=user_id)


@router.get("/group/{group_id}")
async def get_group_chat(
    group_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_get_group_chat_id(db, current_user=current_user, group_id=group_id)


@router.get("/{chat_id}/messages")
async def list_messages(
    chat_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Messages of a chat, newest first."""
    return service_list_messages(
        db, current_user=current_user, chat_id=chat_id, page=page, limit=limit
    )


@router.put("/{chat_id}/seen")
async def mark_chat_seen(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Mark every message in the chat as seen by me."""
    return await service_mark_seen(
        db, current_user=current_user, chat_id=chat_id, broadcaster=broadcaster
    )
