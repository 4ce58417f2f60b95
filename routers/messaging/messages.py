from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from core.ports.blob_store import BlobStorePort
from models import User
from routers.dependencies import get_blob_store, get_broadcaster, get_current_user
from utils.fanout import Broadcaster

from .schemas import EditMessageRequest, GroupInviteRequest, SendMessageRequest
from .service import (
    delete_message as service_delete_message,
    edit_message as service_edit_message,
    send_group_invites as service_send_group_invites,
    send_message as service_send_message,
)

router = APIRouter(prefix="/chats", tags=["Messages"])


@router.post("/messages")
async def send_message(
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    blob_store: BlobStorePort = Depends(get_blob_store),
):
    """
    Send a message to an existing chat (`chatID`) or to a user (`receiverID`).
    The private chat with that user is created on the first message.
    """
    return await service_send_message(
        db,
        current_user=current_user,
        request=request,
        broadcaster=broadcaster,
        blob_store=blob_store,
    )


@router.put("/messages/{message_id}")
async def edit_message(
    message_id: int,
    request: EditMessageRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Edit my message. Not allowed once someone else has seen it."""
    return await service_edit_message(
        db,
        current_user=current_user,
        message_id=message_id,
        request=request,
        broadcaster=broadcaster,
    )


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    return await service_delete_message(
        db, current_user=current_user, message_id=message_id, broadcaster=broadcaster
    )


@router.post("/invites")
async def send_group_invites(
    request: GroupInviteRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Invite several users to a group through their private chats."""
    return await service_send_group_invites(
        db, current_user=current_user, request=request, broadcaster=broadcaster
    )
