import uuid
import asyncio
import logging
from typing import List, Optional, TYPE_CHECKING

from fastapi import WebSocket

import config

if TYPE_CHECKING:
    from room_registry import Room

logger = logging.getLogger(__name__)


class Connection:
    """A live transport connection.

    The connection never owns a room or player: ``room`` and ``player_id`` are
    a back-reference to the seat it currently occupies, set on join and
    cleared on removal. The registry owns room lifetime.
    """

    def __init__(self, websocket: WebSocket, connection_id: str = ""):
        self.id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.room: Optional["Room"] = None
        self.player_id: Optional[int] = None
        self.msg_timestamps: List[float] = []  # for per-connection rate limiting

    @property
    def is_bound(self) -> bool:
        return self.room is not None and self.player_id is not None

    def bind(self, room: "Room", player_id: int):
        self.room = room
        self.player_id = player_id

    def unbind(self):
        self.room = None
        self.player_id = None

    async def send(self, message: dict) -> bool:
        """Best-effort send. Returns False if the transport refused the message or stalled."""
        try:
            await asyncio.wait_for(self.websocket.send_json(message), config.SEND_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.warning("Send to connection %s timed out after %ss", self.id, config.SEND_TIMEOUT_SECONDS)
            return False
        except Exception as e:
            logger.debug("Send to connection %s failed: %s", self.id, e)
            return False

    async def close(self, code: int = 1000):
        try:
            await asyncio.wait_for(self.websocket.close(code=code), config.SEND_TIMEOUT_SECONDS)
        except Exception as e:
            logger.debug("Close of connection %s failed: %s", self.id, e)


async def broadcast(room: "Room", message: dict, exclude: Optional[Connection] = None) -> int:
    """Send ``message`` to every connection bound to ``room`` except ``exclude``.

    Sends run concurrently and each is bounded by ``SEND_TIMEOUT_SECONDS``,
    so a failed or stalled peer never holds up delivery to the others.
    Returns the number of successful sends.
    """
    recipients = [c for c in room.connections.values() if c is not exclude]
    if not recipients:
        return 0
    results = await asyncio.gather(*(c.send(message) for c in recipients))
    return sum(1 for ok in results if ok)
