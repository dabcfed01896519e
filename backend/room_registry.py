from enum import Enum
from typing import Container, Dict, List, Optional, TYPE_CHECKING
import asyncio
import logging
import random
import time

import config
from errors import CapacityExhausted, RoomNotFound

if TYPE_CHECKING:
    from connections import Connection
    from question_source import Question

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    LOBBY = "lobby"
    QUESTION = "question"
    RESULTS = "results"
    FINISHED = "finished"


class Player:
    def __init__(self, player_id: int, display_name: Optional[str] = None):
        self.id = player_id
        self.display_name = display_name
        self.ready = display_name is not None
        self.score = 0
        self.joined_at = time.time()

    def set_name(self, name: str):
        self.display_name = name
        self.ready = True


class Room:
    def __init__(self, code: str, max_players: int, host_name: Optional[str] = None):
        now = time.time()
        self.code = code
        self.room_id = f"{code}-{int(now * 1000)}"
        self.host_name = host_name
        self.max_players = max_players
        self.created_at = now
        self.expires_at = now + config.ROOM_TTL_SECONDS
        self.state = Phase.LOBBY
        self.players: List[Player] = []  # seat order
        self.host_id: Optional[int] = None
        self.connections: Dict[int, "Connection"] = {}  # player_id -> connection
        self.category: Optional[str] = None
        self.questions: List["Question"] = []
        self.current_question_index = -1
        self.question_started_at: float = 0
        self.answers: Dict[int, int] = {}  # player_id -> chosen option, current question only
        self.lock = asyncio.Lock()
        self.timer_task: Optional[asyncio.Task] = None
        self.epoch = 0  # bumped on every phase change; timers compare against it
        self.closed = False

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def get_player(self, player_id: Optional[int]) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def ready_players(self) -> List[Player]:
        return [p for p in self.players if p.ready]

    def all_ready_answered(self) -> bool:
        """True once no ready player is still owed an answer (also when none are left)."""
        return all(p.id in self.answers for p in self.ready_players())

    @property
    def current_question(self) -> Optional["Question"]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    def player_view(self, player: Player) -> dict:
        return {
            "id": player.id,
            "name": player.display_name,
            "ready": player.ready,
            "score": player.score,
            "isHost": player.id == self.host_id,
        }

    def player_list(self) -> List[dict]:
        return [self.player_view(p) for p in self.players]

    def remove_player(self, player_id: int) -> Optional[Player]:
        """Drop a player from the roster, handing host to the earliest remaining seat."""
        player = self.get_player(player_id)
        if player is None:
            return None
        self.players = [p for p in self.players if p.id != player_id]
        self.connections.pop(player_id, None)
        self.answers.pop(player_id, None)
        if self.host_id == player_id:
            self.host_id = self.players[0].id if self.players else None
        return player

    def reset_for_lobby(self):
        """Back to the lobby with the same roster; scores and progress cleared."""
        self.state = Phase.LOBBY
        self.epoch += 1
        self.questions = []
        self.current_question_index = -1
        self.question_started_at = 0
        self.answers = {}
        for player in self.players:
            player.score = 0

    def cancel_timer(self):
        task = self.timer_task
        self.timer_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def summary(self) -> dict:
        return {
            "code": self.code,
            "roomId": self.room_id,
            "state": self.state.value,
            "hostName": self.host_name,
            "hostId": self.host_id,
            "createdAt": int(self.created_at * 1000),
            "expiresAt": int(self.expires_at * 1000),
            "maxPlayers": self.max_players,
            "currentPlayers": [{"id": p.id, "name": p.display_name} for p in self.players],
        }


def generate_room_code(taken: Container[str], length: Optional[int] = None,
                       attempts: Optional[int] = None, rng: Optional[random.Random] = None) -> str:
    """Return a fixed-width numeric code that is not in ``taken``.

    A few random draws first; once those all collide, scan the whole code
    space in order so allocation succeeds while any code is free.
    """
    length = length or config.ROOM_CODE_LENGTH
    attempts = config.MAX_ROOM_CODE_ATTEMPTS if attempts is None else attempts
    rng = rng or random
    space = 10 ** length
    for _ in range(attempts):
        code = str(rng.randrange(space)).zfill(length)
        if code not in taken:
            return code
    for n in range(space):
        code = str(n).zfill(length)
        if code not in taken:
            return code
    raise CapacityExhausted()


def normalize_code(raw) -> str:
    """Left-pad a user-supplied code; anything non-numeric cannot name a room."""
    code = str(raw if raw is not None else "").strip()
    if not code.isdigit() or len(code) > config.ROOM_CODE_LENGTH:
        raise RoomNotFound()
    return code.zfill(config.ROOM_CODE_LENGTH)


class RoomRegistry:
    """Owns the code -> Room table.

    Table operations are plain synchronous methods, so each one runs to
    completion on the event loop without interleaving. Anything that also
    touches a room's contents takes ``room.lock`` first.
    """

    def __init__(self):
        self.rooms: Dict[str, Room] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def create(self, max_players: Optional[int] = None, host_name: Optional[str] = None,
               code: Optional[str] = None) -> Room:
        if config.MAX_ROOMS and len(self.rooms) >= config.MAX_ROOMS:
            raise CapacityExhausted()
        if code is None:
            code = generate_room_code(self.rooms)
        elif code in self.rooms:
            raise CapacityExhausted()
        room = Room(code, max_players or config.DEFAULT_MAX_PLAYERS, host_name=host_name)
        self.rooms[code] = room
        logger.info("Created room %s (max %d players)", code, room.max_players)
        return room

    def get(self, code: str) -> Optional[Room]:
        return self.rooms.get(code)

    def is_live(self, room: Room) -> bool:
        return not room.closed and self.rooms.get(room.code) is room

    def delete(self, code: str, room: Optional[Room] = None) -> Optional[Room]:
        current = self.rooms.get(code)
        if current is None or (room is not None and current is not room):
            return None
        current.closed = True
        current.cancel_timer()
        del self.rooms[code]
        logger.info("Deleted room %s", code)
        return current

    async def expire(self, room: Room):
        """Tell every member the room is gone, close their connections, then drop it."""
        async with room.lock:
            if not self.is_live(room):
                return
            connections = list(room.connections.values())
            for connection in connections:
                await connection.send({"type": "roomExpired", "code": room.code})
            for connection in connections:
                connection.unbind()
                await connection.close()
            room.connections.clear()
            self.delete(room.code, room)
            logger.info("Cleaned up expired room %s (%d connections closed)", room.code, len(connections))

    async def sweep(self, now: Optional[float] = None) -> int:
        expired = [room for room in list(self.rooms.values()) if room.is_expired(now)]
        for room in expired:
            await self.expire(room)
        return len(expired)

    def start_sweeper(self):
        """Start the background expiry task."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop_sweeper(self):
        task = self._sweep_task
        self._sweep_task = None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _sweep_loop(self):
        while True:
            try:
                await asyncio.sleep(config.ROOM_SWEEP_INTERVAL)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in room sweep loop")
