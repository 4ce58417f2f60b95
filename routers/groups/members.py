from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from core.db import get_db
from models import User
from routers.dependencies import get_broadcaster, get_current_user
from utils.fanout import Broadcaster

from .schemas import GroupAddMembersRequest
from .service import (
    add_members as service_add_members,
    demote_admin as service_demote_admin,
    list_members as service_list_members,
    promote_admin as service_promote_admin,
    remove_member as service_remove_member,
)

router = APIRouter(prefix="/groups", tags=["Group Members"])


@router.get("/{group_id}/members")
async def list_members(
    group_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Members in join order. Only visible to members."""
    return service_list_members(
        db, current_user=current_user, group_id=group_id, page=page, limit=limit
    )


@router.post("/{group_id}/members")
async def add_members(
    group_id: int,
    request: GroupAddMembersRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    return await service_add_members(
        db, current_user=current_user, group_id=group_id, request=request, broadcaster=broadcaster
    )


@router.delete("/{group_id}/members/{user_id}")
async def remove_member(
    group_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    return await service_remove_member(
        db, current_user=current_user, group_id=group_id, user_id=user_id, broadcaster=broadcaster
    )


@router.post("/{group_id}/admins/{user_id}")
async def promote_admin(
    group_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    return await service_promote_admin(
        db, current_user=current_user, group_id=group_id, user_id=user_id, broadcaster=broadcaster
    )


@router.delete("/{group_id}/admins/{user_id}")
async def demote_admin(
    group_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """A group always keeps at least one admin."""
    return await service_demote_admin(
        db, current_user=current_user, group_id=group_id, user_id=user_id, broadcaster=broadcaster
    )
