from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from core.db import get_db
from models import User
from routers.dependencies import get_current_user

from .schemas import FriendRequestDirection
from .service import (
    accept_friend_request as service_accept_friend_request,
    cancel_friend_request as service_cancel_friend_request,
    decline_friend_request as service_decline_friend_request,
    list_friend_requests as service_list_friend_requests,
    list_friends as service_list_friends,
    list_mutual_friends as service_list_mutual_friends,
    remove_friend as service_remove_friend,
    send_friend_request as service_send_friend_request,
)

router = APIRouter(prefix="/users", tags=["Friends"])


@router.get("/me/friends")
async def list_friends(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_list_friends(db, current_user=current_user, page=page, limit=limit)


@router.get("/me/friend-requests")
async def list_friend_requests(
    direction: FriendRequestDirection = Query(default=FriendRequestDirection.received),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Requests sent to me (`direction=received`) or by me (`direction=sent`)."""
    return service_list_friend_requests(
        db, current_user=current_user, direction=direction, page=page, limit=limit
    )


@router.get("/{user_id}/mutual-friends")
async def list_mutual_friends(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_list_mutual_friends(db, current_user=current_user, user_id=user_id)


@router.post("/{user_id}/friend-request")
async def send_friend_request(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_send_friend_request(db, current_user=current_user, user_id=user_id)


@router.delete("/{user_id}/friend-request")
async def cancel_friend_request(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_cancel_friend_request(db, current_user=current_user, user_id=user_id)


@router.post("/{user_id}/friend-request/accept")
async def accept_friend_request(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_accept_friend_request(db, current_user=current_user, user_id=user_id)


@router.post("/{user_id}/friend-request/decline")
async def decline_friend_request(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return service_decline_friend_request(db, current_user=current_user, user_id=user_id)


@router.delete("/{user_id}/friend")
async def remove_friend(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Also deletes our private chat and its messages."""
    return service_remove_friend(db, current_user=current_user, user_id=user_id)
