"""Which connections are listening to which quiz."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

from .events import EventStore
from .schemas import OutboundEvent, frame

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class SessionRegistry:
    """Room membership for live quiz connections.

    Membership lives only in process memory. ``broadcast`` also appends each
    frame to the event store (when one is attached) so polling clients get the
    same ordered stream as socket clients.
    """

    def __init__(self, events: Optional[EventStore] = None):
        self.events = events
        self._rooms: Dict[str, Dict[Connection, None]] = {}

    def register(self, quiz_id: str, connection: Connection) -> None:
        self._rooms.setdefault(quiz_id, {})[connection] = None

    def unregister(self, connection: Connection) -> List[str]:
        left = []
        for quiz_id in self.quizzes_for(connection):
            room = self._rooms[quiz_id]
            room.pop(connection, None)
            if not room:
                del self._rooms[quiz_id]
            left.append(quiz_id)
        return left

    def connections(self, quiz_id: str) -> List[Connection]:
        return list(self._rooms.get(quiz_id, ()))

    def quizzes_for(self, connection: Connection) -> List[str]:
        return [quiz_id for quiz_id, room in self._rooms.items() if connection in room]

    async def send(self, connection: Connection, payload: dict[str, Any]) -> bool:
        try:
            await connection.send_json(payload)
        except Exception as exc:
            logger.debug("dropping connection %r: %s", connection, exc)
            self.unregister(connection)
            return False
        return True

    async def broadcast(self, quiz_id: str, event: OutboundEvent) -> int:
        """Send an event to every connection in the quiz room; return how many got it."""
        payload = frame(event)
        if self.events is not None:
            await self.events.append(quiz_id, payload)

        delivered = 0
        for connection in self.connections(quiz_id):
            if await self.send(connection, payload):
                delivered += 1
        logger.debug("quiz %s: %s delivered to %d connection(s)", quiz_id, event.event, delivered)
        return delivered


