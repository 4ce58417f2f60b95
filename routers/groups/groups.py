from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from core.ports.blob_store import BlobStorePort
from models import User
from routers.dependencies import get_blob_store, get_broadcaster, get_current_user
from utils.fanout import Broadcaster

from .schemas import GroupCreateRequest, GroupUpdateRequest
from .service import (
    create_group as service_create_group,
    delete_group as service_delete_group,
    get_group as service_get_group,
    leave_group as service_leave_group,
    update_group as service_update_group,
)

router = APIRouter(prefix="/groups", tags=["Groups"])


@router.post("")
async def create_group(
    request: GroupCreateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """
    Create a group with its chat. The creator becomes the first admin and
    `members` must name at least two other existing users.
    """
    return await service_create_group(
        db, current_user=current_user, request=request, broadcaster=broadcaster
    )


@router.get("/{group_id}")
async def get_group(
    group_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_get_group(db, current_user=current_user, group_id=group_id)


@router.put("/{group_id}")
async def update_group(
    group_id: int,
    request: GroupUpdateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    blob_store: BlobStorePort = Depends(get_blob_store),
):
    """Admin only. Images are uploaded before anything is saved."""
    return await service_update_group(
        db,
        current_user=current_user,
        group_id=group_id,
        request=request,
        broadcaster=broadcaster,
        blob_store=blob_store,
    )


@router.delete("/{group_id}")
async def delete_group(
    group_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Admin only. Removes the group together with its chat and messages."""
    return service_delete_group(db, current_user=current_user, group_id=group_id)


@router.post("/{group_id}/leave")
async def leave_group(
    group_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """
    Leave a group. If the last admin leaves, the longest-standing member is
    promoted. If nobody is left, the group is deleted.
    """
    return await service_leave_group(
        db, current_user=current_user, group_id=group_id, broadcaster=broadcaster
    )
