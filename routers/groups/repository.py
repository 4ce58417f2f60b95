"""Groups repository layer."""

from typing import Dict, Iterable, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import Group, GroupJoinRequest, GroupMember


def get_group(db: Session, *, group_id: int, for_update: bool = False):
    q = db.query(Group).filter(Group.group_id == group_id)
    if for_update:
        q = q.with_for_update()
    return q.first()


def get_groups_by_ids(db: Session, *, group_ids: Iterable[int]) -> Dict[int, Group]:
    group_ids = list(set(group_ids))
    if not group_ids:
        return {}
    rows = db.query(Group).filter(Group.group_id.in_(group_ids)).all()
    return {row.group_id: row for row in rows}


def create_group(db: Session, *, group_id: int, name: str, description: str, now):
    group = Group(
        group_id=group_id,
        name=name,
        description=description,
        created_at=now,
        updated_at=now,
    )
    db.add(group)
    db.flush()
    return group


def delete_group(db: Session, *, group_id: int):
    db.query(GroupJoinRequest).filter(GroupJoinRequest.group_id == group_id).delete(
        synchronize_session=False
    )
    db.query(GroupMember).filter(GroupMember.group_id == group_id).delete(
        synchronize_session=False
    )
    db.query(Group).filter(Group.group_id == group_id).delete(synchronize_session=False)


# --- Members ---


def get_member(db: Session, *, group_id: int, user_id: int):
    return (
        db.query(GroupMember)
        .filter(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
        .first()
    )


def members_query(db: Session, *, group_id: int):
    return (
        db.query(GroupMember)
        .filter(GroupMember.group_id == group_id)
        .order_by(GroupMember.joined_at, GroupMember.id)
    )


def admin_ids(db: Session, *, group_id: int) -> List[int]:
    rows = (
        db.query(GroupMember.user_id)
        .filter(GroupMember.group_id == group_id, GroupMember.is_admin.is_(True))
        .order_by(GroupMember.joined_at, GroupMember.id)
        .all()
    )
    return [user_id for (user_id,) in rows]


def count_members(db: Session, *, group_id: int) -> int:
    return db.query(GroupMember).filter(GroupMember.group_id == group_id).count()


def count_admins(db: Session, *, group_id: int) -> int:
    return (
        db.query(GroupMember)
        .filter(GroupMember.group_id == group_id, GroupMember.is_admin.is_(True))
        .count()
    )


def count_members_by_group(db: Session, *, group_ids: Iterable[int]) -> Dict[int, int]:
    group_ids = list(group_ids)
    if not group_ids:
        return {}
    rows = (
        db.query(GroupMember.group_id, func.count(GroupMember.id))
        .filter(GroupMember.group_id.in_(group_ids))
        .group_by(GroupMember.group_id)
        .all()
    )
    return {group_id: count for group_id, count in rows}


def earliest_member(db: Session, *, group_id: int):
    return members_query(db, group_id=group_id).first()


def add_member(db: Session, *, group_id: int, user_id: int, now, is_admin: bool = False):
    member = GroupMember(group_id=group_id, user_id=user_id, is_admin=is_admin, joined_at=now)
    db.add(member)
    db.flush()
    return member


def remove_member(db: Session, *, group_id: int, user_id: int) -> int:
    return (
        db.query(GroupMember)
        .filter(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
        .delete(synchronize_session=False)
    )


# --- Join requests ---


def get_join_request(db: Session, *, group_id: int, user_id: int):
    return (
        db.query(GroupJoinRequest)
        .filter(GroupJoinRequest.group_id == group_id, GroupJoinRequest.user_id == user_id)
        .first()
    )


def join_requests_query(db: Session, *, group_id: int):
    return (
        db.query(GroupJoinRequest)
        .filter(GroupJoinRequest.group_id == group_id)
        .order_by(GroupJoinRequest.requested_at, GroupJoinRequest.id)
    )


def sent_join_requests_query(db: Session, *, user_id: int):
    return (
        db.query(GroupJoinRequest)
        .filter(GroupJoinRequest.user_id == user_id)
        .order_by(GroupJoinRequest.requested_at.desc(), GroupJoinRequest.id.desc())
    )


def add_join_request(db: Session, *, group_id: int, user_id: int, now):
    join_request = GroupJoinRequest(group_id=group_id, user_id=user_id, requested_at=now)
    db.add(join_request)
    db.flush()
    return join_request


def delete_join_requests(db: Session, *, group_id: int, user_ids: Iterable[int]) -> int:
    user_ids = list(user_ids)
    if not user_ids:
        return 0
    return (
        db.query(GroupJoinRequest)
        .filter(GroupJoinRequest.group_id == group_id, GroupJoinRequest.user_id.in_(user_ids))
        .delete(synchronize_session=False)
    )
