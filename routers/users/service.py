"""Profiles, friendships and account removal."""

import logging
from datetime import datetime

from fastapi import HTTPException, status

from core.db import transaction
from core.pagination import paginate
from core.users import get_user_by_id, get_users_by_ids, user_summary
from models import User, private_pair_key
from routers.messaging import repository as messaging_repository
from utils.logging_helpers import log_info

from . import repository as users_repository
from .schemas import FriendRequestDirection

logger = logging.getLogger(__name__)


def _require_user(db, user_id: int, *, for_update: bool = False):
    query = db.query(User).filter(User.user_id == user_id, User.is_deleted.is_(False))
    if for_update:
        query = query.with_for_update()
    user = query.first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def _require_other_user(db, *, current_user, user_id: int, action: str):
    if user_id == current_user.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Cannot {action} yourself")
    return _require_user(db, user_id)


def get_profile(db, *, current_user, user_id: int, presence):
    user = get_user_by_id(db, user_id=user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    viewer_id = current_user.user_id
    profile = {
        "userID": user.user_id,
        "name": user.name,
        "bio": user.bio,
        "profilePic": user.profile_pic,
        "cover": user.cover,
        "lastSeen": user.last_seen.isoformat() if user.last_seen else None,
        "isOnline": presence.lookup(user.user_id) is not None,
        "friendsCount": users_repository.count_friends(db, user_id=user.user_id),
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }
    if user.user_id != viewer_id:
        profile["isFriend"] = (
            users_repository.get_friendship(db, user_id=viewer_id, friend_id=user.user_id) is not None
        )
        profile["requestSent"] = (
            users_repository.get_friend_request(db, sender_id=viewer_id, receiver_id=user.user_id)
            is not None
        )
        profile["requestReceived"] = (
            users_repository.get_friend_request(db, sender_id=user.user_id, receiver_id=viewer_id)
            is not None
        )
    return profile


def delete_account(db, *, current_user):
    """
    Soft delete. The row stays so that messages, memberships and friendships
    keep resolving; the account just stops showing up in lookups.
    """
    with transaction(db, action="delete account"):
        user = _require_user(db, current_user.user_id, for_update=True)
        user.is_deleted = True
        user.updated_at = datetime.utcnow()
        users_repository.delete_pending_requests(db, user_id=user.user_id)

    log_info(logger, "Account soft deleted", user_id=current_user.user_id)
    return {"message": "Account deleted"}


# --- Friends ---


def list_friends(db, *, current_user, page: int, limit: int):
    def _serialize(rows):
        users = {u.user_id: u for u in get_users_by_ids(db, user_ids=[r.friend_id for r in rows])}
        return [
            {"user": user_summary(users[r.friend_id]), "since": r.since.isoformat() if r.since else None}
            for r in rows
            if r.friend_id in users
        ]

    return paginate(
        users_repository.friends_query(db, user_id=current_user.user_id),
        page=page,
        limit=limit,
        key="friends",
        serialize_page=_serialize,
    )


def list_mutual_friends(db, *, current_user, user_id: int):
    _require_other_user(db, current_user=current_user, user_id=user_id, action="get mutual friends with")
    mine = set(users_repository.friend_ids(db, user_id=current_user.user_id))
    mutual = [uid for uid in users_repository.friend_ids(db, user_id=user_id) if uid in mine]
    users = sorted(get_users_by_ids(db, user_ids=mutual), key=lambda u: u.user_id)
    return {"mutualFriends": [user_summary(u) for u in users]}


def list_friend_requests(db, *, current_user, direction: FriendRequestDirection, page: int, limit: int):
    if direction == FriendRequestDirection.sent:
        query = users_repository.sent_requests_query(db, user_id=current_user.user_id)
        other_attr = "receiver_id"
    else:
        query = users_repository.received_requests_query(db, user_id=current_user.user_id)
        other_attr = "sender_id"

    def other_id(row):
        return getattr(row, other_attr)

    def _serialize(rows):
        users = {u.user_id: u for u in get_users_by_ids(db, user_ids=[other_id(r) for r in rows])}
        return [
            {
                "user": user_summary(users[other_id(r)]),
                "requestedAt": r.requested_at.isoformat() if r.requested_at else None,
            }
            for r in rows
            if other_id(r) in users
        ]

    return paginate(query, page=page, limit=limit, key="requests", serialize_page=_serialize)


def send_friend_request(db, *, current_user, user_id: int):
    me = current_user.user_id
    with transaction(db, action="send friend request"):
        _require_other_user(db, current_user=current_user, user_id=user_id, action="befriend")
        if users_repository.get_friendship(db, user_id=me, friend_id=user_id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="You're already friends")
        if users_repository.get_friend_request(db, sender_id=me, receiver_id=user_id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Friend request already sent")
        if users_repository.get_friend_request(db, sender_id=user_id, receiver_id=me):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="This user already sent you a friend request",
            )
        users_repository.add_friend_request(db, sender_id=me, receiver_id=user_id, now=datetime.utcnow())
    return {"message": "Friend request sent"}


def cancel_friend_request(db, *, current_user, user_id: int):
    with transaction(db, action="cancel friend request"):
        if not users_repository.delete_friend_request(db, sender_id=current_user.user_id, receiver_id=user_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Friend request not found")
    return {"message": "Friend request cancelled"}


def accept_friend_request(db, *, current_user, user_id: int):
    me = current_user.user_id
    with transaction(db, action="accept friend request"):
        _require_other_user(db, current_user=current_user, user_id=user_id, action="befriend")
        if not users_repository.delete_friend_request(db, sender_id=user_id, receiver_id=me):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Friend request not found")
        users_repository.add_friendship(db, user_a=me, user_b=user_id, now=datetime.utcnow())

    log_info(logger, "Friend request accepted", user_id=me, friend_id=user_id)
    return {"message": "Friend request accepted"}


def decline_friend_request(db, *, current_user, user_id: int):
    with transaction(db, action="decline friend request"):
        if not users_repository.delete_friend_request(db, sender_id=user_id, receiver_id=current_user.user_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Friend request not found")
    return {"message": "Friend request declined"}


def remove_friend(db, *, current_user, user_id: int):
    """Unfriend both ways and drop the private chat between the two."""
    me = current_user.user_id
    with transaction(db, action="remove friend"):
        if not users_repository.remove_friendship(db, user_a=me, user_b=user_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="You're not friends")
        chat = messaging_repository.get_private_chat_by_pair(db, pair_key=private_pair_key(me, user_id))
        deleted_messages = 0
        if chat:
            deleted_messages = messaging_repository.delete_chat_cascade(db, chat_id=chat.chat_id)

    log_info(logger, "Friend removed", user_id=me, friend_id=user_id, messages=deleted_messages)
    return {"message": "Friend removed"}
