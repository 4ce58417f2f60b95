"""Users repository layer."""

from typing import List

from sqlalchemy import or_
from sqlalchemy.orm import Session

from models import FriendRequest, Friendship, GroupJoinRequest


# --- Friendships ---


def get_friendship(db: Session, *, user_id: int, friend_id: int):
    return (
        db.query(Friendship)
        .filter(Friendship.user_id == user_id, Friendship.friend_id == friend_id)
        .first()
    )


def friends_query(db: Session, *, user_id: int):
    return (
        db.query(Friendship)
        .filter(Friendship.user_id == user_id)
        .order_by(Friendship.since.desc(), Friendship.id.desc())
    )


def friend_ids(db: Session, *, user_id: int) -> List[int]:
    rows = db.query(Friendship.friend_id).filter(Friendship.user_id == user_id).all()
    return [friend_id for (friend_id,) in rows]


def count_friends(db: Session, *, user_id: int) -> int:
    return db.query(Friendship).filter(Friendship.user_id == user_id).count()


def add_friendship(db: Session, *, user_a: int, user_b: int, now):
    db.add_all(
        [
            Friendship(user_id=user_a, friend_id=user_b, since=now),
            Friendship(user_id=user_b, friend_id=user_a, since=now),
        ]
    )
    db.flush()


def remove_friendship(db: Session, *, user_a: int, user_b: int) -> int:
    return (
        db.query(Friendship)
        .filter(
            or_(
                (Friendship.user_id == user_a) & (Friendship.friend_id == user_b),
                (Friendship.user_id == user_b) & (Friendship.friend_id == user_a),
            )
        )
        .delete(synchronize_session=False)
    )


# --- Friend requests ---


def get_friend_request(db: Session, *, sender_id: int, receiver_id: int):
    return (
        db.query(FriendRequest)
        .filter(FriendRequest.sender_id == sender_id, FriendRequest.receiver_id == receiver_id)
        .first()
    )


def received_requests_query(db: Session, *, user_id: int):
    return (
        db.query(FriendRequest)
        .filter(FriendRequest.receiver_id == user_id)
        .order_by(FriendRequest.requested_at.desc(), FriendRequest.id.desc())
    )


def sent_requests_query(db: Session, *, user_id: int):
    return (
        db.query(FriendRequest)
        .filter(FriendRequest.sender_id == user_id)
        .order_by(FriendRequest.requested_at.desc(), FriendRequest.id.desc())
    )


def add_friend_request(db: Session, *, sender_id: int, receiver_id: int, now):
    friend_request = FriendRequest(sender_id=sender_id, receiver_id=receiver_id, requested_at=now)
    db.add(friend_request)
    db.flush()
    return friend_request


def delete_friend_request(db: Session, *, sender_id: int, receiver_id: int) -> int:
    return (
        db.query(FriendRequest)
        .filter(FriendRequest.sender_id == sender_id, FriendRequest.receiver_id == receiver_id)
        .delete(synchronize_session=False)
    )


def delete_pending_requests(db: Session, *, user_id: int) -> int:
    """Drop every open friend and join request a user is part of."""
    deleted = (
        db.query(FriendRequest)
        .filter(or_(FriendRequest.sender_id == user_id, FriendRequest.receiver_id == user_id))
        .delete(synchronize_session=False)
    )
    deleted += (
        db.query(GroupJoinRequest)
        .filter(GroupJoinRequest.user_id == user_id)
        .delete(synchronize_session=False)
    )
    return deleted
