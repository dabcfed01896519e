"""Client -> server WebSocket messages.

Every frame is a JSON object with a ``type`` tag; the tag selects one of the
models below. Unknown tags, bad JSON and payloads that do not fit their model
all surface as ``Malformed`` with a distinct reason.
"""
import json
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, StrictInt, TypeAdapter, ValidationError

from errors import Malformed


class JoinMessage(BaseModel):
    type: Literal["join"] = "join"
    code: Union[str, int]
    name: Optional[str] = None


class SetNameMessage(BaseModel):
    type: Literal["setName"] = "setName"
    name: str


class StartGameMessage(BaseModel):
    type: Literal["startGame"] = "startGame"


class SubmitAnswerMessage(BaseModel):
    type: Literal["submitAnswer"] = "submitAnswer"
    choice_index: StrictInt = Field(alias="choiceIndex")


class LeaveRoomMessage(BaseModel):
    type: Literal["leaveRoom"] = "leaveRoom"


class PickCategoryMessage(BaseModel):
    type: Literal["pickCategory"] = "pickCategory"
    category: Optional[str] = None


class ReturnToLobbyMessage(BaseModel):
    type: Literal["returnToLobby"] = "returnToLobby"


class ChatMessage(BaseModel):
    type: Literal["chat"] = "chat"
    text: str


CLIENT_MESSAGES = (
    JoinMessage,
    SetNameMessage,
    StartGameMessage,
    SubmitAnswerMessage,
    LeaveRoomMessage,
    PickCategoryMessage,
    ReturnToLobbyMessage,
    ChatMessage,
)

ClientMessage = Annotated[Union[CLIENT_MESSAGES], Field(discriminator="type")]

MESSAGE_TYPES = frozenset(model.model_fields["type"].default for model in CLIENT_MESSAGES)

_adapter = TypeAdapter(ClientMessage)


def parse_message(raw: str):
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise Malformed("invalid_json")
    if not isinstance(data, dict):
        raise Malformed("malformed_message")
    msg_type = data.get("type")
    if not isinstance(msg_type, str) or msg_type not in MESSAGE_TYPES:
        raise Malformed("unknown_message_type")
    try:
        return _adapter.validate_python(data)
    except ValidationError:
        raise Malformed("malformed_message")
