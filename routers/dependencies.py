import logging

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from auth import decode_access_token, token_from_connection
from core.db import get_db
from core.presence import PresenceDirectory
from core.users import get_user_by_id
from utils.fanout import Broadcaster
from utils.storage import get_blob_store  # noqa: F401  re-exported for routers

logger = logging.getLogger(__name__)


def get_current_user(conn: HTTPConnection, db: Session = Depends(get_db)):
    """
    Resolves the session token (cookie, Bearer header or ``token`` query param)
    to an active user. Soft-deleted accounts are rejected like unknown ones.
    """
    token = token_from_connection(conn)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user_id = decode_access_token(token)
    user = get_user_by_id(db, user_id=user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_presence(conn: HTTPConnection) -> PresenceDirectory:
    return conn.app.state.presence


def get_broadcaster(presence: PresenceDirectory = Depends(get_presence)) -> Broadcaster:
    return Broadcaster(presence)
