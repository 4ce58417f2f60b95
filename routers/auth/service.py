"""Account signup and session handling."""

import logging
import re
from datetime import datetime

from fastapi import HTTPException, status

from auth import create_access_token, hash_password, verify_password
from config import LOGIN_RATE_LIMIT_PER_MINUTE
from core.db import transaction
from core.rate_limit import default_rate_limiter
from core.sequences import USERS, allocate_id
from core.users import email_taken, get_user_by_email
from models import User
from utils.logging_helpers import log_info, log_warning

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def serialize_account(user) -> dict:
    return {
        "userID": user.user_id,
        "name": user.name,
        "email": user.email,
        "bio": user.bio,
        "profilePic": user.profile_pic,
        "cover": user.cover,
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }


def _check_login_rate_limit(identifier: str):
    result = default_rate_limiter.allow(
        key=f"rl:login:{identifier}", limit=LOGIN_RATE_LIMIT_PER_MINUTE, window_seconds=60
    )
    if not result.allowed:
        log_warning(logger, "Login rate limit exceeded", identifier=identifier)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Please try again later.",
            headers={"X-Retry-After": str(result.retry_after_seconds)},
        )


def signup(db, *, request):
    """Create an account and return it with a fresh session token."""
    email = request.email.strip().lower()
    name = request.name.strip()
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Name is required")
    if not EMAIL_RE.match(email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email address")
    if email_taken(db, email=email):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email is already registered")

    with transaction(db, action="create account"):
        now = datetime.utcnow()
        user = User(
            user_id=allocate_id(db, USERS),
            name=name,
            email=email,
            password=hash_password(request.password),
            bio=(request.bio or "").strip(),
            last_seen=now,
            created_at=now,
            updated_at=now,
        )
        db.add(user)
        db.flush()
        user_id = user.user_id

    log_info(logger, "Account created", user_id=user_id)
    user = db.query(User).filter(User.user_id == user_id).first()
    return serialize_account(user), create_access_token(user_id)


def login(db, *, request, client_ip: str = "unknown"):
    email = request.email.strip().lower()
    _check_login_rate_limit(f"{client_ip}:{email}")

    user = get_user_by_email(db, email=email)
    if not user or not verify_password(request.password, user.password):
        log_warning(logger, "Failed login attempt", email=email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    log_info(logger, "User logged in", user_id=user.user_id)
    return serialize_account(user), create_access_token(user.user_id)
