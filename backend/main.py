from fastapi import FastAPI, WebSocket, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Union
from contextlib import asynccontextmanager
import uvicorn
import logging
import socket as socketlib

import config
config.setup_logging()

from auth import AuthServiceUnavailable, verify_credentials
from errors import (
    Capacity, CapacityExhausted, CoordinatorError, Duplicate, GameInProgress,
    IllegalState, Malformed, NotFound, RoomFull, RoomNotFound, Unauthorized,
)
from question_source import sanitize_text
from room_registry import Phase, normalize_code
from socket_manager import socket_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting quiz room coordinator")
    socket_manager.registry.start_sweeper()
    yield
    await socket_manager.registry.stop_sweeper()
    logger.info("Shutting down quiz room coordinator")


app = FastAPI(title="Quiz Room Coordinator", lifespan=lifespan)

# Most specific class first
ERROR_STATUS = [
    (RoomFull, 400),
    (CapacityExhausted, 429),
    (NotFound, 404),
    (Capacity, 400),
    (IllegalState, 409),
    (Unauthorized, 403),
    (Duplicate, 409),
    (Malformed, 400),
]


@app.exception_handler(CoordinatorError)
async def coordinator_error_handler(request: Request, exc: CoordinatorError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content={"ok": False, "error": exc.reason})


def get_local_ip():
    try:
        s = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "127.0.0.1"


class RoomCreateRequest(BaseModel):
    maxPlayers: Optional[int] = None
    hostName: Optional[str] = Field(default=None, validate_default=True)

    @field_validator('maxPlayers')
    @classmethod
    def validate_max_players(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not (1 <= v <= config.MAX_PLAYERS_PER_ROOM):
            raise ValueError(f'maxPlayers must be between 1 and {config.MAX_PLAYERS_PER_ROOM}')
        return v

    @field_validator('hostName')
    @classmethod
    def validate_host_name(cls, v: Optional[str]) -> str:
        v = sanitize_text(v or "")[:config.MAX_NICKNAME_LENGTH]
        return v or "Host"


class RoomJoinRequest(BaseModel):
    code: Union[str, int]
    playerName: str = "Guest"


class LoginRequest(BaseModel):
    username: str
    password: str

    @field_validator('username', 'password')
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError('missing_fields')
        return v


@app.post("/api/create-room")
async def create_room(request: RoomCreateRequest):
    room = socket_manager.registry.create(max_players=request.maxPlayers, host_name=request.hostName)
    return {
        "ok": True,
        "code": room.code,
        "roomId": room.room_id,
        "expiresAt": int(room.expires_at * 1000),
        "maxPlayers": room.max_players,
    }


@app.post("/api/join-room")
async def join_room(request: RoomJoinRequest):
    """Check that a room can take another player; the seat itself is taken over the WebSocket."""
    room = socket_manager.registry.get(normalize_code(request.code))
    if room is None:
        raise RoomNotFound()
    if len(room.players) >= room.max_players:
        raise RoomFull()
    if room.state != Phase.LOBBY and not config.ALLOW_MID_GAME_JOIN:
        raise GameInProgress()
    return {
        "ok": True,
        "code": room.code,
        "roomId": room.room_id,
        "maxPlayers": room.max_players,
        "currentPlayers": len(room.players),
    }


@app.get("/api/room/{code}")
async def get_room(code: str):
    room = socket_manager.registry.get(normalize_code(code))
    if room is None:
        raise RoomNotFound()
    return {"ok": True, **room.summary()}


@app.post("/api/login")
async def login(request: LoginRequest):
    try:
        user = await verify_credentials(request.username, request.password)
    except AuthServiceUnavailable:
        raise HTTPException(status_code=503, detail="auth_unavailable")
    if user is None:
        raise HTTPException(status_code=401, detail="invalid_credentials")
    return {"ok": True, "user": user}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await socket_manager.connect(websocket)


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
    socket_manager.allowed_origins = origins
else:
    local_ip = get_local_ip()
    origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        f"http://{local_ip}:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "Quiz room coordinator is running"}


@app.get("/health")
async def health():
    return {"status": "healthy", "rooms": len(socket_manager.registry.rooms)}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
