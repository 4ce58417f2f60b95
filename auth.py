import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, Response, status
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from starlette.requests import HTTPConnection

from config import (
    AUTH_COOKIE_NAME,
    AUTH_COOKIE_SECURE,
    JWT_ALGORITHM,
    JWT_EXPIRE_DAYS,
    JWT_SECRET,
)

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        # Unrecognized hash format
        return False


def create_access_token(user_id: int, expires_in: Optional[timedelta] = None) -> str:
    now = datetime.utcnow()
    expire = now + (expires_in or timedelta(days=JWT_EXPIRE_DAYS))
    claims = {"sub": str(user_id), "iat": now, "exp": expire}
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> int:
    """
    Validate a session JWT and return the user ID it was issued for.

    Raises:
        HTTPException: 401 when the token is expired, tampered with or malformed
    """
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired")
    except JWTError as e:
        logger.debug(f"JWT validation failed: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = claims.get("sub")
    try:
        return int(subject)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def token_from_connection(conn: HTTPConnection) -> Optional[str]:
    """Session token from the auth cookie, a Bearer header or a ``token`` query param."""
    token = conn.cookies.get(AUTH_COOKIE_NAME)
    if token:
        return token
    auth_header = conn.headers.get("authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return conn.query_params.get("token") or None


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value=token,
        max_age=JWT_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        samesite="strict" if AUTH_COOKIE_SECURE else "lax",
        secure=AUTH_COOKIE_SECURE,
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(key=AUTH_COOKIE_NAME, httponly=True, secure=AUTH_COOKIE_SECURE)
