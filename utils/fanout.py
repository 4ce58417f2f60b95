import logging
from typing import Any, Dict, Iterable, Optional

from core.presence import PresenceDirectory

logger = logging.getLogger(__name__)

# Outbound event names
NEW_MESSAGE = "newMessage"
EDIT_MESSAGE = "editMessage"
DELETE_MESSAGE = "deleteMessage"
SEEN_MESSAGES = "seenMessages"
TYPING_ON = "typingOn"
TYPING_OFF = "typingOff"
ONLINE_USERS = "onlineUsers"
USER_OFFLINE = "userOffline"


def build_frame(event: str, data: Any) -> Dict[str, Any]:
    return {"event": event, "data": data}


class Broadcaster:
    """Delivers events to whoever is connected right now.

    At-most-once and online-only: offline participants are skipped, nothing is
    queued or retried, and a failed send is logged without failing the caller.
    The database stays the source of truth for anything missed.
    """

    def __init__(self, presence: PresenceDirectory):
        self.presence = presence

    async def _deliver(self, user_id: int, handle, frame: Dict[str, Any]) -> bool:
        try:
            await handle.send_json(frame)
            return True
        except Exception as e:
            logger.error(f"Failed to deliver {frame.get('event')} to user {user_id}: {e}")
            return False

    async def send_to_user(self, user_id: int, event: str, data: Any) -> bool:
        handle = self.presence.lookup(user_id)
        if handle is None:
            return False
        return await self._deliver(user_id, handle, build_frame(event, data))

    async def broadcast(
        self,
        participants: Iterable[int],
        exclude_user_id: Optional[int],
        event: str,
        data: Any,
    ) -> int:
        """Send ``event`` to every online participant except ``exclude_user_id``.

        Returns the number of connections the event was handed to.
        """
        frame = build_frame(event, data)
        delivered = 0
        for user_id in sorted(set(participants)):
            if user_id == exclude_user_id:
                continue
            handle = self.presence.lookup(user_id)
            if handle is None:
                continue
            if await self._deliver(user_id, handle, frame):
                delivered += 1
        logger.debug(f"Broadcast {event} reached {delivered} connection(s)")
        return delivered

    async def broadcast_all(self, event: str, data: Any) -> int:
        frame = build_frame(event, data)
        delivered = 0
        for user_id, handle in self.presence.connections():
            if await self._deliver(user_id, handle, frame):
                delivered += 1
        return delivered

    async def broadcast_online_users(self) -> int:
        """Push the full online snapshot to every connection."""
        return await self.broadcast_all(ONLINE_USERS, sorted(self.presence.list_online()))
