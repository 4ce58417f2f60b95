from datetime import datetime

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship

from core.db import Base


def private_pair_key(user_a: int, user_b: int) -> str:
    """Normalized key of an unordered user pair, e.g. ``"3:7"``."""
    low, high = sorted((int(user_a), int(user_b)))
    return f"{low}:{high}"


# =================================
#  Identity Sequences
# =================================
class IdCounter(Base):
    """Per-entity counter backing the public, monotonically increasing IDs."""

    __tablename__ = "id_counters"

    name = Column(String(32), primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)


# =================================
#  Users Table
# =================================
class User(Base):
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(50), nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password = Column(String, nullable=False)  # argon2 hash
    bio = Column(String, nullable=False, default="")
    profile_pic = Column(String, nullable=False, default="")
    cover = Column(String, nullable=False, default="")
    last_seen = Column(DateTime, default=datetime.utcnow, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =================================
#  Friends
# =================================
class Friendship(Base):
    """One row per direction; a friendship is always stored as a pair of rows."""

    __tablename__ = "friendships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    friend_id = Column(Integer, ForeignKey("users.user_id"), nullable=False)
    since = Column(DateTime, default=datetime.utcnow, nullable=False)

    friend = relationship("User", foreign_keys=[friend_id])

    __table_args__ = (
        UniqueConstraint("user_id", "friend_id", name="uq_friendship_pair"),
    )


class FriendRequest(Base):
    """A pending request; the sender's sent list and the receiver's inbox are views of this row."""

    __tablename__ = "friend_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    requested_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    sender = relationship("User", foreign_keys=[sender_id])
    receiver = relationship("User", foreign_keys=[receiver_id])

    __table_args__ = (
        UniqueConstraint("sender_id", "receiver_id", name="uq_friend_request_pair"),
    )


# =================================
#  Groups
# =================================
class Group(Base):
    __tablename__ = "groups"

    group_id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False)
    image = Column(String, nullable=False, default="")
    description = Column(String, nullable=False, default="")
    banner = Column(String, nullable=False, default="")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class GroupMember(Base):
    """Membership row. The admin set is the members flagged ``is_admin``."""

    __tablename__ = "group_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("groups.group_id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )


class GroupJoinRequest(Base):
    """Pending join request, seen by the group's admins and by the requester."""

    __tablename__ = "group_join_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("groups.group_id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    requested_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_join_request"),
    )


# =================================
#  Chats
# =================================
class Chat(Base):
    __tablename__ = "chats"

    chat_id = Column(Integer, primary_key=True, autoincrement=False)
    is_group = Column(Boolean, default=False, nullable=False)
    group_id = Column(Integer, ForeignKey("groups.group_id"), unique=True, nullable=True)
    # "<low>:<high>" for private chats, NULL for group chats
    pair_key = Column(String(64), unique=True, nullable=True)
    # Denormalized pointer to the newest message, no FK to keep deletes acyclic
    last_message_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class ChatParticipant(Base):
    __tablename__ = "chat_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(Integer, ForeignKey("chats.chat_id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("chat_id", "user_id", name="uq_chat_participant"),
    )


# =================================
#  Messages
# =================================
class Message(Base):
    __tablename__ = "messages"

    message_id = Column(Integer, primary_key=True, autoincrement=False)
    chat_id = Column(Integer, ForeignKey("chats.chat_id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.user_id"), nullable=False)
    text = Column(Text, nullable=False, default="")
    image = Column(String, nullable=False, default="")
    reply_to_id = Column(Integer, ForeignKey("messages.message_id"), nullable=True)
    # Back-reference only; invites outlive deleted groups
    group_invite_id = Column(Integer, nullable=True)
    is_announcement = Column(Boolean, default=False, nullable=False)
    is_edited = Column(Boolean, default=False, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class MessageSeen(Base):
    """Append-only read receipt; at most one per (message, user)."""

    __tablename__ = "message_seen"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("messages.message_id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False)
    seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_seen"),
    )
