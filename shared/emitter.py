"""Per-user live event channel over WebSocket connections."""

import json
import logging
from typing import Any, Dict, Set

from shared.errors import EmitterUnavailable

logger = logging.getLogger(__name__)

# Server -> client event names
NOTIFICATION_NEW = "notification:new"
NOTIFICATION_READ = "notification:read"
NOTIFICATION_DELETED = "notification:deleted"
SYNC_PROGRESS = "sync:progress"
SYNC_COMPLETED = "sync:completed"
DOCUMENT_PROCESSED = "document:processed"
EVENT_REMINDER = "event:reminder"
EVENT_UPDATED = "event:updated"
EVENT_DELETED = "event:deleted"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class EventEmitter:
    """
    Delivers named events to every live socket a user has open.

    Delivery is best-effort: emitting before start(), to a user with no
    sockets, or through a socket that fails never raises. Sockets only need
    an async ``send_text(str)`` method (FastAPI/Starlette WebSocket).
    """

    def __init__(self):
        self._channels: Dict[str, Set[Any]] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self):
        """Begin accepting registrations and deliveries."""
        self._started = True
        logger.info("Event emitter started")

    def shutdown(self):
        """Stop delivering and forget every registered socket."""
        self._started = False
        self._channels.clear()
        logger.info("Event emitter shut down")

    def register(self, user_id: str, socket: Any):
        """Join a socket to the user's channel."""
        self._channels.setdefault(user_channel(user_id), set()).add(socket)
        logger.info(f"Socket registered on {user_channel(user_id)} ({self.subscriber_count(user_id)} open)")

    def unregister(self, user_id: str, socket: Any):
        """Remove a socket from the user's channel; unknown sockets are ignored."""
        channel = user_channel(user_id)
        sockets = self._channels.get(channel)
        if not sockets:
            return
        sockets.discard(socket)
        if not sockets:
            del self._channels[channel]

    def subscriber_count(self, user_id: str) -> int:
        return len(self._channels.get(user_channel(user_id), ()))

    async def emit(self, user_id: str, event: str, payload: Any):
        """
        Send ``{"event": event, "data": payload}`` to all of the user's sockets.

        Args:
            user_id: Target user
            event: Event name (e.g. "sync:progress")
            payload: JSON-serializable data; UUIDs and datetimes are stringified
        """
        if not self._started:
            logger.debug(f"Emitter not started, dropping {event} for user {user_id}")
            return

        sockets = self._channels.get(user_channel(user_id))
        if not sockets:
            logger.debug(f"No subscribers for user {user_id}, dropping {event}")
            return

        message = json.dumps({"event": event, "data": payload}, default=str)

        for socket in list(sockets):
            try:
                await self._deliver(socket, message)
            except EmitterUnavailable as e:
                logger.warning(f"Dropping socket for user {user_id} after failed {event} delivery: {e}")
                self.unregister(user_id, socket)

    @staticmethod
    async def _deliver(socket: Any, message: str):
        try:
            await socket.send_text(message)
        except Exception as e:
            raise EmitterUnavailable(str(e)) from e
