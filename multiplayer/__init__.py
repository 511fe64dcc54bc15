"""Room matchmaking and realtime state sync shared by every multiplayer game."""

from .errors import (
    ConflictError,
    MultiplayerError,
    NotFoundError,
    NotYourTurn,
    RoomFull,
    RoomNotFound,
    RoomNotJoinable,
    StaleStateError,
    StateDesyncError,
    TransportError,
    ValidationError,
    user_message,
)
from .models import (
    ActionKind,
    ChangeEvent,
    EndReason,
    GameAction,
    GameState,
    GameStateEnvelope,
    Room,
    RoomMode,
    RoomPlayer,
    RoomStatus,
    SessionStatus,
    register_game_state,
)
from .store import InMemoryRoomStore, RoomStore, Subscription

__all__ = [
    "ConflictError",
    "MultiplayerError",
    "NotFoundError",
    "NotYourTurn",
    "RoomFull",
    "RoomNotFound",
    "RoomNotJoinable",
    "StaleStateError",
    "StateDesyncError",
    "TransportError",
    "ValidationError",
    "user_message",
    "ActionKind",
    "ChangeEvent",
    "EndReason",
    "GameAction",
    "GameState",
    "GameStateEnvelope",
    "Room",
    "RoomMode",
    "RoomPlayer",
    "RoomStatus",
    "SessionStatus",
    "register_game_state",
    "InMemoryRoomStore",
    "RoomStore",
    "Subscription",
]
