"""Messaging repository layer."""

from collections import defaultdict
from typing import Dict, Iterable, List

from sqlalchemy import and_, delete, exists, insert, select
from sqlalchemy.orm import Session

from models import Chat, ChatParticipant, Message, MessageSeen


# --- Chats ---


def get_chat(db: Session, *, chat_id: int, for_update: bool = False):
    q = db.query(Chat).filter(Chat.chat_id == chat_id)
    if for_update:
        q = q.with_for_update()
    return q.first()


def get_private_chat_by_pair(db: Session, *, pair_key: str):
    return (
        db.query(Chat)
        .filter(Chat.pair_key == pair_key, Chat.is_group.is_(False))
        .first()
    )


def get_chat_by_group(db: Session, *, group_id: int, for_update: bool = False):
    q = db.query(Chat).filter(Chat.group_id == group_id, Chat.is_group.is_(True))
    if for_update:
        q = q.with_for_update()
    return q.first()


def create_chat(
    db: Session,
    *,
    chat_id: int,
    participant_ids: Iterable[int],
    now,
    is_group: bool = False,
    group_id=None,
    pair_key=None,
):
    chat = Chat(
        chat_id=chat_id,
        is_group=is_group,
        group_id=group_id,
        pair_key=pair_key,
        created_at=now,
        updated_at=now,
    )
    db.add(chat)
    db.flush()
    add_participants(db, chat_id=chat_id, user_ids=participant_ids, now=now)
    return chat


def list_participant_ids(db: Session, *, chat_id: int) -> List[int]:
    rows = (
        db.query(ChatParticipant.user_id)
        .filter(ChatParticipant.chat_id == chat_id)
        .order_by(ChatParticipant.id)
        .all()
    )
    return [user_id for (user_id,) in rows]


def participant_ids_by_chat(db: Session, *, chat_ids: Iterable[int]) -> Dict[int, List[int]]:
    chat_ids = list(chat_ids)
    result: Dict[int, List[int]] = defaultdict(list)
    if not chat_ids:
        return result
    rows = (
        db.query(ChatParticipant.chat_id, ChatParticipant.user_id)
        .filter(ChatParticipant.chat_id.in_(chat_ids))
        .order_by(ChatParticipant.id)
        .all()
    )
    for chat_id, user_id in rows:
        result[chat_id].append(user_id)
    return result


def is_participant(db: Session, *, chat_id: int, user_id: int) -> bool:
    return (
        db.query(ChatParticipant.id)
        .filter(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id == user_id)
        .first()
        is not None
    )


def add_participants(db: Session, *, chat_id: int, user_ids: Iterable[int], now):
    for user_id in dict.fromkeys(user_ids):
        db.add(ChatParticipant(chat_id=chat_id, user_id=user_id, joined_at=now))
    db.flush()


def remove_participant(db: Session, *, chat_id: int, user_id: int) -> int:
    return (
        db.query(ChatParticipant)
        .filter(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id == user_id)
        .delete(synchronize_session=False)
    )


def chats_for_user_query(db: Session, *, user_id: int):
    return (
        db.query(Chat)
        .join(ChatParticipant, ChatParticipant.chat_id == Chat.chat_id)
        .filter(ChatParticipant.user_id == user_id)
        .order_by(Chat.updated_at.desc(), Chat.chat_id.desc())
    )


def delete_chat_cascade(db: Session, *, chat_id: int) -> int:
    """Remove a chat with its participants, messages and read receipts. Returns deleted message count."""
    message_ids = select(Message.message_id).where(Message.chat_id == chat_id)
    db.execute(
        delete(MessageSeen)
        .where(MessageSeen.message_id.in_(message_ids))
        .execution_options(synchronize_session=False)
    )
    deleted_messages = (
        db.query(Message)
        .filter(Message.chat_id == chat_id)
        .delete(synchronize_session=False)
    )
    db.query(ChatParticipant).filter(ChatParticipant.chat_id == chat_id).delete(
        synchronize_session=False
    )
    db.query(Chat).filter(Chat.chat_id == chat_id).delete(synchronize_session=False)
    return deleted_messages


# --- Messages ---


def get_message(db: Session, *, message_id: int, for_update: bool = False):
    q = db.query(Message).filter(Message.message_id == message_id)
    if for_update:
        q = q.with_for_update()
    return q.first()


def get_messages_by_ids(db: Session, *, message_ids: Iterable[int]) -> Dict[int, Message]:
    message_ids = list(set(message_ids))
    if not message_ids:
        return {}
    rows = db.query(Message).filter(Message.message_id.in_(message_ids)).all()
    return {row.message_id: row for row in rows}


def create_message(
    db: Session,
    *,
    message_id: int,
    chat_id: int,
    sender_id: int,
    now,
    text: str = "",
    image: str = "",
    reply_to_id=None,
    group_invite_id=None,
    is_announcement: bool = False,
):
    message = Message(
        message_id=message_id,
        chat_id=chat_id,
        sender_id=sender_id,
        text=text,
        image=image,
        reply_to_id=reply_to_id,
        group_invite_id=group_invite_id,
        is_announcement=is_announcement,
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    db.flush()
    return message


def messages_for_chat_query(db: Session, *, chat_id: int):
    return (
        db.query(Message)
        .filter(Message.chat_id == chat_id)
        .order_by(Message.message_id.desc())
    )


# --- Read receipts ---


def add_seen(db: Session, *, message_id: int, user_id: int, seen_at):
    db.add(MessageSeen(message_id=message_id, user_id=user_id, seen_at=seen_at))
    db.flush()


def seen_by_others(db: Session, *, message_id: int, sender_id: int) -> bool:
    return (
        db.query(MessageSeen.id)
        .filter(MessageSeen.message_id == message_id, MessageSeen.user_id != sender_id)
        .first()
        is not None
    )


def unseen_message_ids(db: Session, *, chat_id: int, user_id: int) -> List[int]:
    already_seen = exists().where(
        and_(MessageSeen.message_id == Message.message_id, MessageSeen.user_id == user_id)
    )
    rows = (
        db.query(Message.message_id)
        .filter(Message.chat_id == chat_id, ~already_seen)
        .order_by(Message.message_id)
        .all()
    )
    return [message_id for (message_id,) in rows]


def bulk_add_seen(db: Session, *, message_ids: List[int], user_id: int, seen_at) -> int:
    """Insert one receipt per message in a single executemany round trip."""
    if not message_ids:
        return 0
    db.execute(
        insert(MessageSeen),
        [{"message_id": message_id, "user_id": user_id, "seen_at": seen_at} for message_id in message_ids],
    )
    return len(message_ids)


def seen_by_message(db: Session, *, message_ids: Iterable[int]) -> Dict[int, List[MessageSeen]]:
    message_ids = list(set(message_ids))
    result: Dict[int, List[MessageSeen]] = defaultdict(list)
    if not message_ids:
        return result
    rows = (
        db.query(MessageSeen)
        .filter(MessageSeen.message_id.in_(message_ids))
        .order_by(MessageSeen.seen_at, MessageSeen.id)
        .all()
    )
    for row in rows:
        result[row.message_id].append(row)
    return result
