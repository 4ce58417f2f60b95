"""Group membership service layer.

Every mutation here runs as one transaction over the group, its members and
its chat. Membership changes end with their announcement message inside that
same transaction, and events go out only after the commit.
"""

import logging
from datetime import datetime
from typing import List

from fastapi import HTTPException, status

from config import GROUP_DESCRIPTION_MAX_LENGTH, GROUP_MIN_INITIAL_MEMBERS
from core.db import transaction
from core.pagination import paginate
from core.sequences import CHATS, GROUPS, allocate_id
from core.users import get_user_by_id, get_users_by_ids, user_summary
from routers.messaging import repository as messaging_repository
from routers.messaging import service as messaging_service
from utils.logging_helpers import log_error, log_info

from . import repository as groups_repository

logger = logging.getLogger(__name__)

GROUP_IMAGE_FOLDER = "groups"


# --- Guards ---


def _load_group(db, group_id: int, *, for_update: bool = False):
    group = groups_repository.get_group(db, group_id=group_id, for_update=for_update)
    if not group:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")
    return group


def check_group_member(db, group_id: int, user_id: int):
    member = groups_repository.get_member(db, group_id=group_id, user_id=user_id)
    if not member:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You're not a member of this group")
    return member


def check_group_admin(db, group_id: int, user_id: int):
    member = check_group_member(db, group_id, user_id)
    if not member.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only group admins can do that")
    return member


def _require_group_chat(db, group_id: int):
    chat = messaging_service.resolve_group_chat(db, group_id=group_id, for_update=True)
    if not chat:
        # Groups are always created with their chat
        log_error(logger, "Group has no chat, aborting", group_id=group_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Group chat is missing",
        )
    return chat


def _display_name(db, user_id: int) -> str:
    user = get_user_by_id(db, user_id=user_id, include_deleted=True)
    return user.name if user else f"User {user_id}"


async def _broadcast_announcements(db, broadcaster, *, chat_id: int, message_ids: List[int], actor_id: int):
    for message_id in message_ids:
        await messaging_service.broadcast_new_message(
            db, broadcaster, chat_id=chat_id, message_id=message_id, exclude_user_id=actor_id
        )


def serialize_group(db, group, *, viewer_id: int) -> dict:
    chat = messaging_service.resolve_group_chat(db, group_id=group.group_id)
    viewer = groups_repository.get_member(db, group_id=group.group_id, user_id=viewer_id)
    return {
        "groupID": group.group_id,
        "name": group.name,
        "image": group.image,
        "description": group.description,
        "banner": group.banner,
        "chatID": chat.chat_id if chat else None,
        "membersCount": groups_repository.count_members(db, group_id=group.group_id),
        "admins": groups_repository.admin_ids(db, group_id=group.group_id),
        "isMember": viewer is not None,
        "isAdmin": bool(viewer and viewer.is_admin),
        "hasRequested": groups_repository.get_join_request(
            db, group_id=group.group_id, user_id=viewer_id
        ) is not None,
        "createdAt": group.created_at.isoformat() if group.created_at else None,
        "updatedAt": group.updated_at.isoformat() if group.updated_at else None,
    }


# --- Groups ---


async def create_group(db, *, current_user, request, broadcaster):
    creator_id = current_user.user_id
    member_ids = [uid for uid in dict.fromkeys(request.members) if uid != creator_id]
    if len(member_ids) < GROUP_MIN_INITIAL_MEMBERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"A group needs at least {GROUP_MIN_INITIAL_MEMBERS} other members",
        )
    name = request.name.strip()
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Group name is required")

    found = {user.user_id for user in get_users_by_ids(db, user_ids=member_ids)}
    missing = [uid for uid in member_ids if uid not in found]
    if missing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {missing[0]} not found")

    with transaction(db, action="create group"):
        now = datetime.utcnow()
        group = groups_repository.create_group(
            db,
            group_id=allocate_id(db, GROUPS),
            name=name,
            description=(request.description or "").strip(),
            now=now,
        )
        groups_repository.add_member(db, group_id=group.group_id, user_id=creator_id, now=now, is_admin=True)
        for user_id in member_ids:
            groups_repository.add_member(db, group_id=group.group_id, user_id=user_id, now=now)

        chat = messaging_repository.create_chat(
            db,
            chat_id=allocate_id(db, CHATS),
            participant_ids=[creator_id, *member_ids],
            now=now,
            is_group=True,
            group_id=group.group_id,
        )
        announcement = messaging_service.create_announcement(
            db, chat=chat, actor_id=creator_id, text=f"{current_user.name} created the group"
        )
        group_id, chat_id, message_id = group.group_id, chat.chat_id, announcement.message_id

    log_info(logger, "Group created", user_id=creator_id, group_id=group_id, members=len(member_ids) + 1)
    await _broadcast_announcements(db, broadcaster, chat_id=chat_id, message_ids=[message_id], actor_id=creator_id)
    return serialize_group(db, _load_group(db, group_id), viewer_id=creator_id)


def get_group(db, *, current_user, group_id: int):
    return serialize_group(db, _load_group(db, group_id), viewer_id=current_user.user_id)


async def update_group(db, *, current_user, group_id: int, request, broadcaster, blob_store):
    if all(value is None for value in (request.name, request.description, request.image, request.banner)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update")
    if request.name is not None and not request.name.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Group name is required")
    if request.description is not None and len(request.description.strip()) > GROUP_DESCRIPTION_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Description cannot exceed {GROUP_DESCRIPTION_MAX_LENGTH} characters",
        )

    _load_group(db, group_id)
    check_group_admin(db, group_id, current_user.user_id)

    # Uploads finish before any field changes, and before the group row is locked
    image_url = banner_url = None
    if request.image:
        image_url = await messaging_service.upload_message_image(
            blob_store, request.image, folder=GROUP_IMAGE_FOLDER
        )
    if request.banner:
        banner_url = await messaging_service.upload_message_image(
            blob_store, request.banner, folder=GROUP_IMAGE_FOLDER
        )

    with transaction(db, action="update group"):
        group = _load_group(db, group_id, for_update=True)
        check_group_admin(db, group_id, current_user.user_id)
        chat = _require_group_chat(db, group_id)

        if request.name is not None:
            group.name = request.name.strip()
        if request.description is not None:
            group.description = request.description.strip()
        if image_url:
            group.image = image_url
        if banner_url:
            group.banner = banner_url
        group.updated_at = datetime.utcnow()

        announcement = messaging_service.create_announcement(
            db, chat=chat, actor_id=current_user.user_id, text=f"{current_user.name} updated the group info"
        )
        chat_id, message_id = chat.chat_id, announcement.message_id

    await _broadcast_announcements(
        db, broadcaster, chat_id=chat_id, message_ids=[message_id], actor_id=current_user.user_id
    )
    return serialize_group(db, _load_group(db, group_id), viewer_id=current_user.user_id)


def delete_group(db, *, current_user, group_id: int):
    with transaction(db, action="delete group"):
        _load_group(db, group_id, for_update=True)
        check_group_admin(db, group_id, current_user.user_id)
        chat = _require_group_chat(db, group_id)
        deleted_messages = messaging_repository.delete_chat_cascade(db, chat_id=chat.chat_id)
        groups_repository.delete_group(db, group_id=group_id)

    log_info(logger, "Group deleted", user_id=current_user.user_id, group_id=group_id, messages=deleted_messages)
    return {"message": "Group deleted", "groupID": group_id}


# --- Members ---


def list_members(db, *, current_user, group_id: int, page: int, limit: int):
    _load_group(db, group_id)
    check_group_member(db, group_id, current_user.user_id)

    def _serialize(rows):
        users = {u.user_id: u for u in get_users_by_ids(db, user_ids=[m.user_id for m in rows], include_deleted=True)}
        return [
            {
                "user": user_summary(users.get(m.user_id)),
                "isAdmin": bool(m.is_admin),
                "joinedAt": m.joined_at.isoformat() if m.joined_at else None,
            }
            for m in rows
        ]

    return paginate(
        groups_repository.members_query(db, group_id=group_id),
        page=page,
        limit=limit,
        key="members",
        serialize_page=_serialize,
    )


async def add_members(db, *, current_user, group_id: int, request, broadcaster):
    user_ids = list(dict.fromkeys(request.user_ids))

    with transaction(db, action="add members"):
        _load_group(db, group_id, for_update=True)
        check_group_admin(db, group_id, current_user.user_id)
        chat = _require_group_chat(db, group_id)

        users = {u.user_id: u for u in get_users_by_ids(db, user_ids=user_ids)}
        for user_id in user_ids:
            if user_id not in users:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")
            if groups_repository.get_member(db, group_id=group_id, user_id=user_id):
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f"User {user_id} is already a member",
                )

        now = datetime.utcnow()
        for user_id in user_ids:
            groups_repository.add_member(db, group_id=group_id, user_id=user_id, now=now)
        messaging_repository.add_participants(db, chat_id=chat.chat_id, user_ids=user_ids, now=now)
        # Adding someone settles any join request they had pending
        groups_repository.delete_join_requests(db, group_id=group_id, user_ids=user_ids)

        names = ", ".join(users[user_id].name for user_id in user_ids)
        announcement = messaging_service.create_announcement(
            db, chat=chat, actor_id=current_user.user_id, text=f"{current_user.name} added {names}"
        )
        chat_id, message_id = chat.chat_id, announcement.message_id

    await _broadcast_announcements(
        db, broadcaster, chat_id=chat_id, message_ids=[message_id], actor_id=current_user.user_id
    )
    return {"message": "Members added", "added": user_ids}


def _detach_member(db, *, group_id: int, chat, user_id: int, actor_id: int, text: str):
    """Drop a member from the group and its chat.

    Returns the announcement IDs written, or None when the group emptied out and
    was deleted along with its chat and messages.
    """
    groups_repository.remove_member(db, group_id=group_id, user_id=user_id)
    messaging_repository.remove_participant(db, chat_id=chat.chat_id, user_id=user_id)

    if groups_repository.count_members(db, group_id=group_id) == 0:
        messaging_repository.delete_chat_cascade(db, chat_id=chat.chat_id)
        groups_repository.delete_group(db, group_id=group_id)
        return None

    announcements = [
        messaging_service.create_announcement(db, chat=chat, actor_id=actor_id, text=text).message_id
    ]
    if groups_repository.count_admins(db, group_id=group_id) == 0:
        successor = groups_repository.earliest_member(db, group_id=group_id)
        successor.is_admin = True
        db.flush()
        announcements.append(
            messaging_service.create_announcement(
                db,
                chat=chat,
                actor_id=successor.user_id,
                text=f"{_display_name(db, successor.user_id)} is now an admin",
            ).message_id
        )
    return announcements


async def remove_member(db, *, current_user, group_id: int, user_id: int, broadcaster):
    if user_id == current_user.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Use leave to exit the group")

    with transaction(db, action="remove member"):
        _load_group(db, group_id, for_update=True)
        check_group_admin(db, group_id, current_user.user_id)
        if not groups_repository.get_member(db, group_id=group_id, user_id=user_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User is not a member")
        chat = _require_group_chat(db, group_id)
        chat_id = chat.chat_id
        announcements = _detach_member(
            db,
            group_id=group_id,
            chat=chat,
            user_id=user_id,
            actor_id=current_user.user_id,
            text=f"{current_user.name} removed {_display_name(db, user_id)}",
        )

    await _broadcast_announcements(
        db, broadcaster, chat_id=chat_id, message_ids=announcements or [], actor_id=current_user.user_id
    )
    return {"message": "Member removed"}


async def leave_group(db, *, current_user, group_id: int, broadcaster):
    with transaction(db, action="leave group"):
        _load_group(db, group_id, for_update=True)
        check_group_member(db, group_id, current_user.user_id)
        chat = _require_group_chat(db, group_id)
        chat_id = chat.chat_id
        announcements = _detach_member(
            db,
            group_id=group_id,
            chat=chat,
            user_id=current_user.user_id,
            actor_id=current_user.user_id,
            text=f"{current_user.name} left the group",
        )

    if announcements is None:
        log_info(logger, "Last member left, group deleted", user_id=current_user.user_id, group_id=group_id)
        return {"message": "Left group", "groupDeleted": True}

    await _broadcast_announcements(
        db, broadcaster, chat_id=chat_id, message_ids=announcements, actor_id=current_user.user_id
    )
    return {"message": "Left group", "groupDeleted": False}


async def promote_admin(db, *, current_user, group_id: int, user_id: int, broadcaster):
    with transaction(db, action="promote member"):
        _load_group(db, group_id, for_update=True)
        check_group_admin(db, group_id, current_user.user_id)
        target = groups_repository.get_member(db, group_id=group_id, user_id=user_id)
        if not target:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User is not a member")
        if target.is_admin:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User is already an admin")
        chat = _require_group_chat(db, group_id)

        target.is_admin = True
        announcement = messaging_service.create_announcement(
            db,
            chat=chat,
            actor_id=current_user.user_id,
            text=f"{current_user.name} made {_display_name(db, user_id)} an admin",
        )
        chat_id, message_id = chat.chat_id, announcement.message_id

    await _broadcast_announcements(
        db, broadcaster, chat_id=chat_id, message_ids=[message_id], actor_id=current_user.user_id
    )
    return {"message": "Member promoted to admin"}


async def demote_admin(db, *, current_user, group_id: int, user_id: int, broadcaster):
    with transaction(db, action="demote admin"):
        _load_group(db, group_id, for_update=True)
        check_group_admin(db, group_id, current_user.user_id)
        target = groups_repository.get_member(db, group_id=group_id, user_id=user_id)
        if not target:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User is not a member")
        if not target.is_admin:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User is not an admin")
        if groups_repository.count_admins(db, group_id=group_id) <= 1:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Cannot demote the only admin")
        chat = _require_group_chat(db, group_id)

        target.is_admin = False
        announcement = messaging_service.create_announcement(
            db,
            chat=chat,
            actor_id=current_user.user_id,
            text=f"{current_user.name} removed {_display_name(db, user_id)} as admin",
        )
        chat_id, message_id = chat.chat_id, announcement.message_id

    await _broadcast_announcements(
        db, broadcaster, chat_id=chat_id, message_ids=[message_id], actor_id=current_user.user_id
    )
    return {"message": "Admin demoted to member"}


# --- Join requests ---


def _serialize_join_requests(db, rows):
    users = {u.user_id: u for u in get_users_by_ids(db, user_ids=[r.user_id for r in rows], include_deleted=True)}
    return [
        {
            "user": user_summary(users.get(r.user_id)),
            "requestedAt": r.requested_at.isoformat() if r.requested_at else None,
        }
        for r in rows
    ]


def list_join_requests(db, *, current_user, group_id: int, page: int, limit: int):
    _load_group(db, group_id)
    check_group_admin(db, group_id, current_user.user_id)
    return paginate(
        groups_repository.join_requests_query(db, group_id=group_id),
        page=page,
        limit=limit,
        key="requests",
        serialize_page=lambda rows: _serialize_join_requests(db, rows),
    )


def send_join_request(db, *, current_user, group_id: int):
    with transaction(db, action="send join request"):
        _load_group(db, group_id, for_update=True)
        if groups_repository.get_member(db, group_id=group_id, user_id=current_user.user_id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="You're already a member")
        if groups_repository.get_join_request(db, group_id=group_id, user_id=current_user.user_id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Join request already sent")
        groups_repository.add_join_request(
            db, group_id=group_id, user_id=current_user.user_id, now=datetime.utcnow()
        )
    return {"message": "Join request sent"}


def cancel_join_request(db, *, current_user, group_id: int):
    with transaction(db, action="cancel join request"):
        _load_group(db, group_id, for_update=True)
        if not groups_repository.delete_join_requests(db, group_id=group_id, user_ids=[current_user.user_id]):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No pending join request")
    return {"message": "Join request cancelled"}


async def accept_join_request(db, *, current_user, group_id: int, user_id: int, broadcaster):
    with transaction(db, action="accept join request"):
        _load_group(db, group_id, for_update=True)
        check_group_admin(db, group_id, current_user.user_id)
        if not groups_repository.get_join_request(db, group_id=group_id, user_id=user_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No pending join request")
        requester = get_user_by_id(db, user_id=user_id)
        if not requester:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        chat = _require_group_chat(db, group_id)

        now = datetime.utcnow()
        groups_repository.delete_join_requests(db, group_id=group_id, user_ids=[user_id])
        groups_repository.add_member(db, group_id=group_id, user_id=user_id, now=now)
        messaging_repository.add_participants(db, chat_id=chat.chat_id, user_ids=[user_id], now=now)
        announcement = messaging_service.create_announcement(
            db, chat=chat, actor_id=user_id, text=f"{requester.name} joined the group"
        )
        chat_id, message_id = chat.chat_id, announcement.message_id

    await _broadcast_announcements(
        db, broadcaster, chat_id=chat_id, message_ids=[message_id], actor_id=current_user.user_id
    )
    return {"message": "Join request accepted"}


def decline_join_request(db, *, current_user, group_id: int, user_id: int):
    with transaction(db, action="decline join request"):
        _load_group(db, group_id, for_update=True)
        check_group_admin(db, group_id, current_user.user_id)
        if not groups_repository.delete_join_requests(db, group_id=group_id, user_ids=[user_id]):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No pending join request")
    return {"message": "Join request declined"}


def list_my_join_requests(db, *, current_user, page: int, limit: int):
    def _serialize(rows):
        groups = groups_repository.get_groups_by_ids(db, group_ids=[r.group_id for r in rows])
        return [
            {
                "groupID": r.group_id,
                "name": groups[r.group_id].name if r.group_id in groups else None,
                "image": groups[r.group_id].image if r.group_id in groups else None,
                "requestedAt": r.requested_at.isoformat() if r.requested_at else None,
            }
            for r in rows
        ]

    return paginate(
        groups_repository.sent_join_requests_query(db, user_id=current_user.user_id),
        page=page,
        limit=limit,
        key="requests",
        serialize_page=_serialize,
    )
