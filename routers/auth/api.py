from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from auth import clear_auth_cookie, set_auth_cookie
from core.db import get_db
from models import User
from routers.dependencies import get_current_user

from .schemas import LoginRequest, SignupRequest
from .service import login as service_login
from .service import serialize_account
from .service import signup as service_signup

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post("/signup", status_code=status.HTTP_201_CREATED)
def signup(request: SignupRequest, response: Response, db: Session = Depends(get_db)):
    """Create an account. The session token is set as a cookie and returned."""
    account, token = service_signup(db, request=request)
    set_auth_cookie(response, token)
    return {"user": account, "token": token}


@router.post("/login")
def login(
    request: LoginRequest,
    http_request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    client_ip = http_request.client.host if http_request.client else "unknown"
    account, token = service_login(db, request=request, client_ip=client_ip)
    set_auth_cookie(response, token)
    return {"user": account, "token": token}


@router.post("/logout")
def logout(response: Response):
    clear_auth_cookie(response)
    return {"message": "Logged out"}


@router.get("/check")
def check(current_user: User = Depends(get_current_user)):
    """Returns the account behind the current session, 401 otherwise."""
    return {"user": serialize_account(current_user)}
