"""Recoverable per-request failures raised by the room coordinator.

Each error carries a stable ``reason`` string that is sent back to the
requesting connection (or used as the REST error body). None of them leave
room state modified.
"""


class CoordinatorError(Exception):
    reason = "error"

    def __init__(self, reason: str = ""):
        if reason:
            self.reason = reason
        super().__init__(self.reason)


# --- NotFound ---

class NotFound(CoordinatorError):
    reason = "not_found"


class RoomNotFound(NotFound):
    reason = "room_not_found"


class NotInRoom(NotFound):
    reason = "not_in_room"


# --- Capacity ---

class Capacity(CoordinatorError):
    reason = "capacity"


class RoomFull(Capacity):
    reason = "room_full"


class CapacityExhausted(Capacity):
    """Raised when no free room code (or room slot) is left."""
    reason = "capacity_exhausted"


# --- IllegalState ---

class IllegalState(CoordinatorError):
    reason = "illegal_state"


class GameInProgress(IllegalState):
    reason = "game_in_progress"


class WrongPhase(IllegalState):
    reason = "wrong_phase"


class AlreadyInRoom(IllegalState):
    reason = "already_in_room"


class NotReady(IllegalState):
    reason = "not_ready"


class NoReadyPlayers(IllegalState):
    reason = "no_ready_players"


class NoQuestions(IllegalState):
    reason = "no_questions"


# --- Unauthorized ---

class Unauthorized(CoordinatorError):
    reason = "unauthorized"


class NotHost(Unauthorized):
    reason = "not_host"


# --- Duplicate ---

class Duplicate(CoordinatorError):
    reason = "duplicate"


class AlreadyAnswered(Duplicate):
    reason = "already_answered"


# --- Malformed ---

class Malformed(CoordinatorError):
    reason = "malformed_message"
