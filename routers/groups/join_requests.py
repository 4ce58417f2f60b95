from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from core.db import get_db
from models import User
from routers.dependencies import get_broadcaster, get_current_user
from utils.fanout import Broadcaster

from .service import (
    accept_join_request as service_accept_join_request,
    cancel_join_request as service_cancel_join_request,
    decline_join_request as service_decline_join_request,
    list_join_requests as service_list_join_requests,
    list_my_join_requests as service_list_my_join_requests,
    send_join_request as service_send_join_request,
)

router = APIRouter(prefix="/groups", tags=["Group Join Requests"])


@router.get("/requests/sent")
async def list_my_join_requests(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Groups I asked to join, newest request first."""
    return service_list_my_join_requests(db, current_user=current_user, page=page, limit=limit)


@router.get("/{group_id}/requests")
async def list_join_requests(
    group_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_list_join_requests(
        db, current_user=current_user, group_id=group_id, page=page, limit=limit
    )


@router.post("/{group_id}/requests")
async def send_join_request(
    group_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_send_join_request(db, current_user=current_user, group_id=group_id)


@router.delete("/{group_id}/requests")
async def cancel_join_request(
    group_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_cancel_join_request(db, current_user=current_user, group_id=group_id)


@router.post("/{group_id}/requests/{user_id}/accept")
async def accept_join_request(
    group_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    return await service_accept_join_request(
        db, current_user=current_user, group_id=group_id, user_id=user_id, broadcaster=broadcaster
    )


@router.post("/{group_id}/requests/{user_id}/decline")
async def decline_join_request(
    group_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_decline_join_request(
        db, current_user=current_user, group_id=group_id, user_id=user_id
    )
