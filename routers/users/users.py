from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from auth import clear_auth_cookie
from core.db import get_db
from core.presence import PresenceDirectory
from models import User
from routers.dependencies import get_current_user, get_presence

from .service import delete_account as service_delete_account
from .service import get_profile as service_get_profile

router = APIRouter(prefix="/users", tags=["Users"])


@router.delete("/me")
async def delete_account(
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Soft delete my account and end the session."""
    result = service_delete_account(db, current_user=current_user)
    clear_auth_cookie(response)
    return result


@router.get("/{user_id}")
async def get_profile(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    presence: PresenceDirectory = Depends(get_presence),
):
    return service_get_profile(db, current_user=current_user, user_id=user_id, presence=presence)
