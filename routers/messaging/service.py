"""Messaging/Realtime service layer."""

import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from config import MESSAGE_MAX_LENGTH, MESSAGE_RATE_LIMIT_PER_MINUTE
from core.db import transaction
from core.pagination import paginate
from core.ports.blob_store import BlobStoreError
from core.rate_limit import default_rate_limiter
from core.sequences import CHATS, MESSAGES, allocate_id
from core.users import get_user_by_id
from models import private_pair_key
from routers.groups import repository as groups_repository
from utils.fanout import (
    DELETE_MESSAGE,
    EDIT_MESSAGE,
    NEW_MESSAGE,
    SEEN_MESSAGES,
    TYPING_OFF,
    TYPING_ON,
    USER_OFFLINE,
)
from utils.logging_helpers import log_error, log_info, log_warning
from utils.message_sanitizer import sanitize_text
from utils.storage import upload_async

from . import payloads
from . import repository as messaging_repository
from .schemas import ClientEvent

logger = logging.getLogger(__name__)

MESSAGE_IMAGE_FOLDER = "messages"


# --- Chat resolution ---


def resolve_private_chat(db, *, user_a: int, user_b: int):
    """Find or create the one private chat between two users.

    The normalized pair key is unique, so when two first messages race, the
    losing insert fails, is rolled back and the winner's chat is returned. Must
    run before any other write of the caller's transaction.
    """
    pair_key = private_pair_key(user_a, user_b)
    chat = messaging_repository.get_private_chat_by_pair(db, pair_key=pair_key)
    if chat:
        return chat

    try:
        chat = messaging_repository.create_chat(
            db,
            chat_id=allocate_id(db, CHATS),
            participant_ids=[user_a, user_b],
            now=datetime.utcnow(),
            pair_key=pair_key,
        )
    except IntegrityError:
        db.rollback()
        chat = messaging_repository.get_private_chat_by_pair(db, pair_key=pair_key)
        if not chat:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to create chat",
            )
        log_info(logger, "Private chat created concurrently, reusing it", chat_id=chat.chat_id)
    return chat


def resolve_group_chat(db, *, group_id: int, for_update: bool = False):
    """Group chats are created with their group and never lazily."""
    return messaging_repository.get_chat_by_group(db, group_id=group_id, for_update=for_update)


def _load_chat_for_participant(db, *, chat_id: int, user_id: int, for_update: bool = False):
    chat = messaging_repository.get_chat(db, chat_id=chat_id, for_update=for_update)
    if not chat:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    if not messaging_repository.is_participant(db, chat_id=chat_id, user_id=user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You're not part of this chat")
    return chat


# --- Persistence ---


def persist_message(
    db,
    *,
    chat,
    sender_id: int,
    text: str = "",
    image: str = "",
    reply_to_id: Optional[int] = None,
    group_invite_id: Optional[int] = None,
    is_announcement: bool = False,
):
    """Store a message, mark it seen by its sender and point the chat at it."""
    now = datetime.utcnow()
    message = messaging_repository.create_message(
        db,
        message_id=allocate_id(db, MESSAGES),
        chat_id=chat.chat_id,
        sender_id=sender_id,
        now=now,
        text=text,
        image=image,
        reply_to_id=reply_to_id,
        group_invite_id=group_invite_id,
        is_announcement=is_announcement,
    )
    messaging_repository.add_seen(db, message_id=message.message_id, user_id=sender_id, seen_at=now)
    chat.last_message_id = message.message_id
    chat.updated_at = now
    db.flush()
    return message


def create_announcement(db, *, chat, actor_id: int, text: str):
    """System message describing a membership change.

    Callers run this as the last write of their transaction so the change and
    its announcement commit together.
    """
    if not text or not text.strip():
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Announcement text cannot be empty",
        )
    return persist_message(db, chat=chat, sender_id=actor_id, text=text.strip(), is_announcement=True)


async def upload_message_image(blob_store, raw_payload: str, *, folder: str = MESSAGE_IMAGE_FOLDER) -> str:
    try:
        return await upload_async(blob_store, raw_payload, folder)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid image: {exc}")
    except BlobStoreError as exc:
        log_error(logger, f"Image upload failed: {exc}", folder=folder)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Image upload failed")


async def broadcast_new_message(db, broadcaster, *, chat_id: int, message_id: int, exclude_user_id: Optional[int]):
    """Reload the committed chat and message and fan the ``newMessage`` event out."""
    chat = messaging_repository.get_chat(db, chat_id=chat_id)
    message = messaging_repository.get_message(db, message_id=message_id)
    if not chat or not message:
        return None
    event = payloads.new_message_event(db, chat, message)
    participants = messaging_repository.list_participant_ids(db, chat_id=chat_id)
    await broadcaster.broadcast(participants, exclude_user_id, NEW_MESSAGE, event)
    return event


# --- Messages ---


def _check_send_rate_limit(user_id: int):
    rl = default_rate_limiter.allow(
        key=f"rl:messages:minute:{user_id}",
        limit=MESSAGE_RATE_LIMIT_PER_MINUTE,
        window_seconds=60,
    )
    if not rl.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded. Maximum {MESSAGE_RATE_LIMIT_PER_MINUTE} messages per minute.",
            headers={"X-Retry-After": str(rl.retry_after_seconds)},
        )


def _validate_references(db, *, chat_id: Optional[int], reply_to: Optional[int], group_invite: Optional[int]):
    """Read-only checks on what a new message points at; ``chat_id`` is None for a chat not created yet."""
    if reply_to is not None:
        target = messaging_repository.get_message(db, message_id=reply_to)
        if not target:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot reply to non existing message",
            )
        if target.chat_id != chat_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot reply to a message from a different chat",
            )

    if group_invite is not None:
        if not groups_repository.get_group(db, group_id=group_invite):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Group invite is invalid")


async def send_message(db, *, current_user, request, broadcaster, blob_store):
    """
    Validate, upload the image, then persist and fan out.

    The upload runs between the read-only checks and the write transaction so no
    row lock (chat counter, chat row) is held across the media store round trip.
    """
    text = sanitize_text(request.text or "")
    image_payload = (request.image or "").strip()

    if not text and not image_payload:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot send empty message")
    if len(text) > MESSAGE_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Message cannot exceed {MESSAGE_MAX_LENGTH} characters",
        )
    if request.chat_id is None and request.receiver_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="chatID or receiverID must be provided",
        )
    if request.chat_id is None and request.receiver_id == current_user.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot message yourself")

    _check_send_rate_limit(current_user.user_id)
    sender_id = current_user.user_id

    if request.chat_id is not None:
        known_chat_id = _load_chat_for_participant(db, chat_id=request.chat_id, user_id=sender_id).chat_id
    else:
        receiver = get_user_by_id(db, user_id=request.receiver_id)
        if not receiver:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receiver not found")
        receiver_id = receiver.user_id
        existing = messaging_repository.get_private_chat_by_pair(
            db, pair_key=private_pair_key(sender_id, receiver_id)
        )
        known_chat_id = existing.chat_id if existing else None

    _validate_references(
        db, chat_id=known_chat_id, reply_to=request.reply_to, group_invite=request.group_invite
    )

    image_url = ""
    if image_payload:
        image_url = await upload_message_image(blob_store, image_payload)

    with transaction(db, action="send message"):
        if request.chat_id is not None:
            # Membership may have changed during the upload
            chat = _load_chat_for_participant(db, chat_id=request.chat_id, user_id=sender_id)
        else:
            chat = resolve_private_chat(db, user_a=sender_id, user_b=receiver_id)

        message = persist_message(
            db,
            chat=chat,
            sender_id=sender_id,
            text=text,
            image=image_url,
            reply_to_id=request.reply_to,
            group_invite_id=request.group_invite,
        )
        chat_id, message_id = chat.chat_id, message.message_id

    log_info(logger, "Message sent", user_id=sender_id, chat_id=chat_id, message_id=message_id)
    return await broadcast_new_message(
        db, broadcaster, chat_id=chat_id, message_id=message_id, exclude_user_id=sender_id
    )


async def edit_message(db, *, current_user, message_id: int, request, broadcaster):
    new_text = sanitize_text(request.new_text or "")
    if not new_text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message text cannot be empty")

    with transaction(db, action="edit message"):
        message = messaging_repository.get_message(db, message_id=message_id, for_update=True)
        if not message:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
        if message.is_announcement:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Announcements cannot be edited")
        if message.sender_id != current_user.user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only edit your own messages")
        if message.is_deleted:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot edit a deleted message")
        if messaging_repository.seen_by_others(db, message_id=message_id, sender_id=message.sender_id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Cannot edit a message that has already been seen",
            )

        message.text = new_text
        message.is_edited = True
        message.updated_at = datetime.utcnow()
        chat_id = message.chat_id

    delta = {"chatID": chat_id, "messageID": message_id, "text": new_text}
    participants = messaging_repository.list_participant_ids(db, chat_id=chat_id)
    await broadcaster.broadcast(participants, current_user.user_id, EDIT_MESSAGE, delta)
    return payloads.serialize_message(db, messaging_repository.get_message(db, message_id=message_id))


async def delete_message(db, *, current_user, message_id: int, broadcaster):
    with transaction(db, action="delete message"):
        message = messaging_repository.get_message(db, message_id=message_id, for_update=True)
        if not message:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
        if message.is_announcement:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Announcements cannot be deleted")
        if message.sender_id != current_user.user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only delete your own messages")
        if message.is_deleted:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message already deleted")

        # Identifiers, receipts and reply links stay so history remains coherent
        message.is_deleted = True
        message.text = ""
        message.image = ""
        message.updated_at = datetime.utcnow()
        chat_id = message.chat_id

    notice = {"chatID": chat_id, "messageID": message_id}
    participants = messaging_repository.list_participant_ids(db, chat_id=chat_id)
    await broadcaster.broadcast(participants, current_user.user_id, DELETE_MESSAGE, notice)
    return notice


async def mark_seen(db, *, current_user, chat_id: int, broadcaster):
    user_id = current_user.user_id
    seen_at = datetime.utcnow()

    with transaction(db, action="mark messages as seen"):
        _load_chat_for_participant(db, chat_id=chat_id, user_id=user_id)
        message_ids = messaging_repository.unseen_message_ids(db, chat_id=chat_id, user_id=user_id)
        try:
            messaging_repository.bulk_add_seen(db, message_ids=message_ids, user_id=user_id, seen_at=seen_at)
            db.flush()
        except IntegrityError:
            # Same user marking the chat from two sessions at once; keep whatever is still missing
            db.rollback()
            message_ids = messaging_repository.unseen_message_ids(db, chat_id=chat_id, user_id=user_id)
            messaging_repository.bulk_add_seen(db, message_ids=message_ids, user_id=user_id, seen_at=seen_at)

    chat = messaging_repository.get_chat(db, chat_id=chat_id)
    event = {
        "chat": payloads.serialize_chat(db, chat),
        "user": user_id,
        "seenAt": seen_at.isoformat(),
    }
    if message_ids:
        participants = messaging_repository.list_participant_ids(db, chat_id=chat_id)
        await broadcaster.broadcast(participants, user_id, SEEN_MESSAGES, event)
    return {**event, "markedCount": len(message_ids)}


# --- Reads ---


def list_chats(db, *, current_user, page: int, limit: int):
    query = messaging_repository.chats_for_user_query(db, user_id=current_user.user_id)
    return paginate(
        query,
        page=page,
        limit=limit,
        key="chats",
        serialize_page=lambda rows: payloads.serialize_chats(db, rows),
    )


def list_messages(db, *, current_user, chat_id: int, page: int, limit: int):
    _load_chat_for_participant(db, chat_id=chat_id, user_id=current_user.user_id)
    query = messaging_repository.messages_for_chat_query(db, chat_id=chat_id)
    return paginate(
        query,
        page=page,
        limit=limit,
        key="messages",
        serialize_page=lambda rows: payloads.serialize_messages(db, rows),
    )


def get_private_chat_id(db, *, current_user, user_id: int):
    if user_id == current_user.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot chat with yourself")
    if not get_user_by_id(db, user_id=user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    chat = messaging_repository.get_private_chat_by_pair(
        db, pair_key=private_pair_key(current_user.user_id, user_id)
    )
    return {"chatID": chat.chat_id if chat else None}


def get_group_chat_id(db, *, current_user, group_id: int):
    if not groups_repository.get_group(db, group_id=group_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")
    if not groups_repository.get_member(db, group_id=group_id, user_id=current_user.user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You're not a member of this group")
    chat = resolve_group_chat(db, group_id=group_id)
    return {"chatID": chat.chat_id if chat else None}


# --- Group invites ---


async def send_group_invites(db, *, current_user, request, broadcaster):
    """Post an invite message into the inviter's private chat with each receiver.

    Every receiver is handled in its own transaction; one bad receiver does not
    undo the invites already sent.
    """
    group = groups_repository.get_group(db, group_id=request.group_invite)
    if not group:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")
    if not groups_repository.get_member(db, group_id=group.group_id, user_id=current_user.user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You're not a member of this group")

    group_id = group.group_id
    invite_text = f"{current_user.name} invited you to join {group.name}"
    sender_id = current_user.user_id
    successful = 0
    failed = 0

    for receiver_id in dict.fromkeys(request.receiver_ids):
        try:
            if receiver_id == sender_id:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot invite yourself")
            with transaction(db, action="send group invite"):
                if not get_user_by_id(db, user_id=receiver_id):
                    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receiver not found")
                if groups_repository.get_member(db, group_id=group_id, user_id=receiver_id):
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Already a member")
                chat = resolve_private_chat(db, user_a=sender_id, user_b=receiver_id)
                message = persist_message(
                    db,
                    chat=chat,
                    sender_id=sender_id,
                    text=invite_text,
                    group_invite_id=group_id,
                )
                chat_id, message_id = chat.chat_id, message.message_id
        except HTTPException as exc:
            failed += 1
            log_warning(logger, f"Group invite not sent: {exc.detail}", user_id=sender_id, receiver_id=receiver_id)
            continue

        successful += 1
        await broadcast_new_message(
            db, broadcaster, chat_id=chat_id, message_id=message_id, exclude_user_id=sender_id
        )

    return {"successful": successful, "failed": failed}


# --- Realtime ---


async def notify_typing(db, *, user_id: int, chat_id: int, typing: bool, broadcaster) -> int:
    """Fan a typing signal out to the chat. Nothing is stored."""
    participants = messaging_repository.list_participant_ids(db, chat_id=chat_id)
    if user_id not in participants:
        log_warning(logger, "Typing signal for a chat the user is not part of", user_id=user_id, chat_id=chat_id)
        return 0
    event = TYPING_ON if typing else TYPING_OFF
    return await broadcaster.broadcast(participants, user_id, event, {"chatID": chat_id, "userID": user_id})


async def handle_client_event(db, *, user_id: int, raw: str, broadcaster) -> None:
    try:
        frame = ClientEvent(**json.loads(raw))
        chat_id = int(frame.data.get("chatID"))
    except (ValueError, TypeError, ValidationError) as exc:
        log_warning(logger, f"Ignoring malformed client frame: {exc}", user_id=user_id)
        return

    if frame.event in (TYPING_ON, TYPING_OFF):
        await notify_typing(
            db, user_id=user_id, chat_id=chat_id, typing=frame.event == TYPING_ON, broadcaster=broadcaster
        )
    else:
        log_warning(logger, f"Ignoring unknown client event {frame.event}", user_id=user_id)


async def handle_connect(*, user_id: int, handle, presence, broadcaster) -> None:
    presence.register(user_id, handle)
    log_info(logger, "Realtime client connected", user_id=user_id, online=len(presence))
    await broadcaster.broadcast_online_users()


async def handle_disconnect(db, *, user_id: int, handle, presence, broadcaster) -> None:
    if not presence.unregister(user_id, handle):
        # A newer connection took over this user; it stays online
        return

    last_seen = datetime.utcnow()
    try:
        with transaction(db, action="update last seen"):
            user = get_user_by_id(db, user_id=user_id, include_deleted=True)
            if user:
                user.last_seen = last_seen
    except HTTPException:
        log_error(logger, "Could not persist last seen on disconnect", user_id=user_id)

    log_info(logger, "Realtime client disconnected", user_id=user_id, online=len(presence))
    await broadcaster.broadcast_all(USER_OFFLINE, {"userID": user_id, "lastSeen": last_seen.isoformat()})
    await broadcaster.broadcast_online_users()
