from fastapi import WebSocket, WebSocketDisconnect
from contextlib import asynccontextmanager
from typing import List, Optional
import itertools
import logging
import time

import config
from connections import Connection, broadcast
from errors import (
    AlreadyInRoom, CoordinatorError, GameInProgress, Malformed, NotInRoom,
    RoomFull, RoomNotFound,
)
from game_engine import GameEngine
from messages import (
    ChatMessage, JoinMessage, LeaveRoomMessage, PickCategoryMessage,
    ReturnToLobbyMessage, SetNameMessage, StartGameMessage, SubmitAnswerMessage,
    parse_message,
)
from question_source import QuestionSourceError, create_question_source, sanitize_text
from room_registry import Phase, Player, Room, RoomRegistry, normalize_code

logger = logging.getLogger(__name__)

# Failed actions reply with a dedicated type; everything else gets a plain "error"
ERROR_REPLY_TYPES = {
    JoinMessage: "joinError",
    StartGameMessage: "startGameError",
    SubmitAnswerMessage: "answerError",
}


def clean_name(name: str) -> str:
    name = sanitize_text(name)
    if not name or len(name) > config.MAX_NICKNAME_LENGTH:
        raise Malformed("invalid_name")
    return name


class SocketManager:
    def __init__(self, registry: Optional[RoomRegistry] = None,
                 engine: Optional[GameEngine] = None):
        self.registry = registry or RoomRegistry()
        self.engine = engine or GameEngine(self.registry, create_question_source())
        self.allowed_origins: List[str] = []
        self._player_ids = itertools.count(1)
        self._handlers = {
            JoinMessage: self._on_join,
            SetNameMessage: self._on_set_name,
            StartGameMessage: self._on_start_game,
            SubmitAnswerMessage: self._on_submit_answer,
            LeaveRoomMessage: self._on_leave_room,
            PickCategoryMessage: self._on_pick_category,
            ReturnToLobbyMessage: self._on_return_to_lobby,
            ChatMessage: self._on_chat,
        }

    # ------------------------------------------------------------------
    # Transport loop
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        connection = Connection(websocket)
        logger.info("Connection %s opened", connection.id)

        try:
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await connection.send({"type": "error", "message": "message_too_large"})
                    continue

                if self._rate_limited(connection):
                    await connection.send({"type": "error", "message": "too_many_messages"})
                    continue

                await self.handle_raw(connection, data)
        except WebSocketDisconnect:
            logger.info("Connection %s disconnected", connection.id)
        except Exception:
            logger.exception("WebSocket error for connection %s", connection.id)
        finally:
            await self.on_disconnect(connection)

    def _rate_limited(self, connection: Connection) -> bool:
        now = time.time()
        timestamps = connection.msg_timestamps
        timestamps[:] = [t for t in timestamps if now - t < 1.0]
        if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
            return True
        timestamps.append(now)
        return False

    async def handle_raw(self, connection: Connection, data: str):
        try:
            message = parse_message(data)
        except Malformed as e:
            logger.warning("Rejected message from connection %s: %s (%s)", connection.id, e.reason, data[:100])
            await connection.send({"type": "error", "message": e.reason})
            return
        await self.handle_message(connection, message)

    async def handle_message(self, connection: Connection, message):
        handler = self._handlers[type(message)]
        try:
            await handler(connection, message)
        except (CoordinatorError, QuestionSourceError) as e:
            logger.info("Connection %s: %s rejected (%s)", connection.id, message.type, e.reason)
            reply_type = ERROR_REPLY_TYPES.get(type(message))
            if reply_type:
                await connection.send({"type": reply_type, "reason": e.reason})
            else:
                await connection.send({"type": "error", "message": e.reason})

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def join(self, connection: Connection, raw_code, name: Optional[str] = None) -> Player:
        if connection.is_bound:
            raise AlreadyInRoom()
        code = normalize_code(raw_code)
        display_name = clean_name(name) if name is not None and name.strip() else None

        room = self.registry.get(code)
        if room is None:
            if not config.AUTO_CREATE_ROOMS:
                raise RoomNotFound()
            room = self.registry.create(code=code)

        async with room.lock:
            if not self.registry.is_live(room):
                raise RoomNotFound()
            if len(room.players) >= room.max_players:
                raise RoomFull()
            if room.state != Phase.LOBBY and not config.ALLOW_MID_GAME_JOIN:
                raise GameInProgress()

            player = Player(next(self._player_ids), display_name)
            room.players.append(player)
            if room.host_id is None:
                room.host_id = player.id
            room.connections[player.id] = connection
            connection.bind(room, player.id)
            logger.info("Player %d (%s) joined room %s", player.id, display_name, room.code)

            await connection.send({
                "type": "joined",
                "playerId": player.id,
                "code": room.code,
                "roomId": room.room_id,
                "hostId": room.host_id,
                "maxPlayers": room.max_players,
                "state": room.state.value,
                "players": room.player_list(),
            })
            sync = self.engine.question_sync(room)
            if sync:
                await connection.send(sync)
            await broadcast(room, {"type": "player_joined", "player": room.player_view(player)},
                            exclude=connection)
            await self._broadcast_players(room)
        return player

    async def set_name(self, connection: Connection, name: str):
        name = clean_name(name)
        async with self._bound_room(connection) as room:
            player = room.get_player(connection.player_id)
            player.set_name(name)
            await self._broadcast_players(room)

    async def leave(self, connection: Connection):
        async with self._bound_room(connection) as room:
            await self._remove(room, connection, notify_self=True)

    async def on_disconnect(self, connection: Connection):
        room = connection.room
        if room is None:
            return
        async with room.lock:
            if connection.room is not room or not self.registry.is_live(room):
                return
            await self._remove(room, connection, notify_self=False)

    async def _remove(self, room: Room, connection: Connection, notify_self: bool):
        """Shared by explicit leave and abrupt disconnect. Caller holds ``room.lock``."""
        old_host = room.host_id
        player = room.remove_player(connection.player_id)
        connection.unbind()
        if player is None:
            return
        logger.info("Player %d left room %s", player.id, room.code)
        if notify_self:
            await connection.send({"type": "left", "code": room.code})

        if not room.players:
            self.registry.delete(room.code, room)
            return

        if room.host_id != old_host:
            logger.info("Room %s host passed from %s to %d", room.code, old_host, room.host_id)
        await self._broadcast_players(room)
        self.engine.check_round_complete(room)

    async def _broadcast_players(self, room: Room):
        await broadcast(room, {
            "type": "updatePlayers",
            "players": room.player_list(),
            "hostId": room.host_id,
        })

    @asynccontextmanager
    async def _bound_room(self, connection: Connection):
        """Lock the connection's room, failing if it is no longer seated there."""
        room = connection.room
        if room is None:
            raise NotInRoom()
        async with room.lock:
            if connection.room is not room or not self.registry.is_live(room):
                raise NotInRoom()
            yield room

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def _on_join(self, connection: Connection, message: JoinMessage):
        await self.join(connection, message.code, message.name)

    async def _on_set_name(self, connection: Connection, message: SetNameMessage):
        await self.set_name(connection, message.name)

    async def _on_start_game(self, connection: Connection, message: StartGameMessage):
        async with self._bound_room(connection) as room:
            self.engine.check_can_start(room, connection.player_id)
            category = room.category

        # The room stays unlocked while the question source is queried
        questions = await self.engine.fetch_questions(category)

        async with self._bound_room(connection) as current:
            if current is not room:
                raise NotInRoom()
            await self.engine.start_game(room, connection.player_id, questions)

    async def _on_submit_answer(self, connection: Connection, message: SubmitAnswerMessage):
        async with self._bound_room(connection) as room:
            await self.engine.submit_answer(room, connection.player_id, message.choice_index)

    async def _on_leave_room(self, connection: Connection, message: LeaveRoomMessage):
        await self.leave(connection)

    async def _on_pick_category(self, connection: Connection, message: PickCategoryMessage):
        category = sanitize_text(message.category or "")[:config.MAX_CATEGORY_LENGTH]
        async with self._bound_room(connection) as room:
            await self.engine.pick_category(room, connection.player_id, category)

    async def _on_return_to_lobby(self, connection: Connection, message: ReturnToLobbyMessage):
        async with self._bound_room(connection) as room:
            await self.engine.return_to_lobby(room, connection.player_id)

    async def _on_chat(self, connection: Connection, message: ChatMessage):
        text = sanitize_text(message.text)[:config.MAX_CHAT_LENGTH]
        if not text:
            raise Malformed()
        async with self._bound_room(connection) as room:
            player = room.get_player(connection.player_id)
            await broadcast(room, {
                "type": "chat",
                "from": {"id": player.id, "name": player.display_name},
                "text": text,
            })


socket_manager = SocketManager()
