from fastapi import APIRouter

from . import groups, join_requests, members

router = APIRouter()
# join_requests first so /groups/requests/sent is not taken for a group ID
router.include_router(join_requests.router)
router.include_router(groups.router)
router.include_router(members.router)
