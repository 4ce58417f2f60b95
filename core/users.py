"""User lookup facade.

Domains should not query the `User` model directly. Every lookup here applies
the soft-delete predicate unless the caller explicitly asks for deleted rows
(historical summaries, announcement wording).
"""

from typing import Iterable

from sqlalchemy.orm import Session

from models import User


def not_deleted():
    return User.is_deleted.is_(False)


def active_users(db: Session):
    return db.query(User).filter(not_deleted())


def _users(db: Session, include_deleted: bool):
    return db.query(User) if include_deleted else active_users(db)


def get_user_by_id(db: Session, *, user_id: int, include_deleted: bool = False):
    return _users(db, include_deleted).filter(User.user_id == user_id).first()


def get_users_by_ids(db: Session, *, user_ids: Iterable[int], include_deleted: bool = False):
    user_ids = list(set(user_ids))
    if not user_ids:
        return []
    return _users(db, include_deleted).filter(User.user_id.in_(user_ids)).all()


def get_user_by_email(db: Session, *, email: str):
    return active_users(db).filter(User.email == email.strip().lower()).first()


def email_taken(db: Session, *, email: str) -> bool:
    # Soft-deleted accounts keep their address reserved.
    return db.query(User.user_id).filter(User.email == email.strip().lower()).first() is not None


def user_summary(user) -> dict:
    """Compact user shape embedded in chat, message and event payloads."""
    if user is None:
        return None
    return {
        "userID": user.user_id,
        "name": user.name,
        "profilePic": user.profile_pic,
        "lastSeen": user.last_seen.isoformat() if user.last_seen else None,
        "isDeleted": bool(user.is_deleted),
    }
