from fastapi import APIRouter

from . import friends, users

router = APIRouter()
# /users/me/... routes before /users/{user_id}
router.include_router(friends.router)
router.include_router(users.router)
