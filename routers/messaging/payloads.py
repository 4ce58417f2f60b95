"""Query-and-stitch assembly of chat and message payloads.

References are stored as plain integer IDs, so every payload is built by loading
each referenced row set in one query per level and stitching the results.
Messages resolve two levels deep: the message's own sender, reply target and
invited group, then the reply target's sender. Nothing deeper is followed.
"""

from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from core.users import get_users_by_ids, user_summary
from routers.groups import repository as groups_repository

from . import repository as messaging_repository


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _users_by_id(db: Session, user_ids: Iterable[int]) -> Dict[int, object]:
    # Deleted accounts still label their historical messages
    users = get_users_by_ids(db, user_ids=user_ids, include_deleted=True)
    return {user.user_id: user for user in users}


def _reply_summary(message, users: Dict[int, object]) -> dict:
    return {
        "messageID": message.message_id,
        "text": message.text,
        "image": message.image,
        "isAnnouncement": bool(message.is_announcement),
        "isDeleted": bool(message.is_deleted),
        "sender": user_summary(users.get(message.sender_id)),
        "createdAt": _iso(message.created_at),
    }


def _group_invite_summary(group, members_count: int) -> dict:
    return {
        "groupID": group.group_id,
        "name": group.name,
        "image": group.image,
        "description": group.description,
        "membersCount": members_count,
    }


def serialize_messages(db: Session, messages: List) -> List[dict]:
    if not messages:
        return []

    # Level one: everything the messages point at directly
    reply_ids = {m.reply_to_id for m in messages if m.reply_to_id}
    invite_ids = {m.group_invite_id for m in messages if m.group_invite_id}
    replies = messaging_repository.get_messages_by_ids(db, message_ids=reply_ids)
    groups = groups_repository.get_groups_by_ids(db, group_ids=invite_ids)
    member_counts = groups_repository.count_members_by_group(db, group_ids=groups.keys())
    seen = messaging_repository.seen_by_message(db, message_ids=[m.message_id for m in messages])

    # Level two: senders of the messages and of their reply targets
    sender_ids = {m.sender_id for m in messages} | {r.sender_id for r in replies.values()}
    users = _users_by_id(db, sender_ids)

    payloads = []
    for message in messages:
        reply = replies.get(message.reply_to_id) if message.reply_to_id else None
        group = groups.get(message.group_invite_id) if message.group_invite_id else None
        payloads.append(
            {
                "messageID": message.message_id,
                "chatID": message.chat_id,
                "sender": user_summary(users.get(message.sender_id)),
                "text": message.text,
                "image": message.image,
                "replyTo": _reply_summary(reply, users) if reply else None,
                "groupInvite": _group_invite_summary(group, member_counts.get(group.group_id, 0)) if group else None,
                "isAnnouncement": bool(message.is_announcement),
                "isEdited": bool(message.is_edited),
                "isDeleted": bool(message.is_deleted),
                "seenBy": [
                    {"user": receipt.user_id, "seenAt": _iso(receipt.seen_at)}
                    for receipt in seen.get(message.message_id, [])
                ],
                "createdAt": _iso(message.created_at),
                "updatedAt": _iso(message.updated_at),
            }
        )
    return payloads


def serialize_message(db: Session, message) -> dict:
    return serialize_messages(db, [message])[0]


def serialize_chats(db: Session, chats: List) -> List[dict]:
    if not chats:
        return []

    participants = messaging_repository.participant_ids_by_chat(db, chat_ids=[c.chat_id for c in chats])
    users = _users_by_id(db, {uid for ids in participants.values() for uid in ids})
    groups = groups_repository.get_groups_by_ids(
        db, group_ids={c.group_id for c in chats if c.group_id}
    )
    last_messages = messaging_repository.get_messages_by_ids(
        db, message_ids={c.last_message_id for c in chats if c.last_message_id}
    )
    last_payloads = {
        payload["messageID"]: payload
        for payload in serialize_messages(db, list(last_messages.values()))
    }

    payloads = []
    for chat in chats:
        group = groups.get(chat.group_id) if chat.group_id else None
        payloads.append(
            {
                "chatID": chat.chat_id,
                "isGroup": bool(chat.is_group),
                "participants": [
                    user_summary(users[user_id])
                    for user_id in participants.get(chat.chat_id, [])
                    if user_id in users
                ],
                "group": (
                    {"groupID": group.group_id, "name": group.name, "image": group.image}
                    if group
                    else None
                ),
                "lastMessage": last_payloads.get(chat.last_message_id),
                "createdAt": _iso(chat.created_at),
                "updatedAt": _iso(chat.updated_at),
            }
        )
    return payloads


def serialize_chat(db: Session, chat) -> dict:
    return serialize_chats(db, [chat])[0]


def new_message_event(db: Session, chat, message) -> dict:
    """Payload of the ``newMessage`` event: chat snapshot, populated message, chat's updatedAt."""
    return {
        "chat": serialize_chat(db, chat),
        "message": serialize_message(db, message),
        "updatedAt": _iso(chat.updated_at),
    }
