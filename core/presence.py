"""In-process presence directory: user ID -> live connection handle.

One handle per user (last connect wins). The directory lives for the process
lifetime only; it starts empty and is cleared on shutdown, so every user reads
as offline after a restart until they reconnect.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Set, Tuple

from utils.logging_helpers import log_debug

logger = logging.getLogger(__name__)


class PresenceDirectory:
    def __init__(self):
        self._connections: Dict[int, Any] = {}
        self._lock = threading.Lock()

    def register(self, user_id: int, handle: Any) -> Optional[Any]:
        """Track ``handle`` for ``user_id``; returns the handle it replaced, if any."""
        with self._lock:
            previous = self._connections.get(user_id)
            self._connections[user_id] = handle
        log_debug(logger, "Presence registered", user_id=user_id, replaced=previous is not None)
        return previous

    def unregister(self, user_id: int, handle: Any = None) -> bool:
        """Forget ``user_id``. Safe to call for users that are not present.

        With ``handle`` given, the entry is only removed while it still points at
        that handle, so a superseded connection closing late cannot log out the
        newer one. Returns True when an entry was removed.
        """
        with self._lock:
            current = self._connections.get(user_id)
            if current is None:
                return False
            if handle is not None and current is not handle:
                return False
            del self._connections[user_id]
        log_debug(logger, "Presence unregistered", user_id=user_id)
        return True

    def lookup(self, user_id: int) -> Optional[Any]:
        with self._lock:
            return self._connections.get(user_id)

    def list_online(self) -> Set[int]:
        with self._lock:
            return set(self._connections)

    def connections(self) -> List[Tuple[int, Any]]:
        """Snapshot of (user ID, handle) pairs, safe to iterate while others connect."""
        with self._lock:
            return list(self._connections.items())

    def clear(self) -> None:
        with self._lock:
            self._connections.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)
