from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple, Type, TypeVar, Union

from .errors import ValidationError


class RoomMode(str, Enum):
    RANKED = "ranked"
    CASUAL = "casual"
    COLLABORATIVE = "collaborative"


class RoomStatus(str, Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    FINISHED = "finished"
    CANCELLED = "cancelled"


ROOM_TRANSITIONS = {
    RoomStatus.WAITING: {RoomStatus.PLAYING, RoomStatus.CANCELLED},
    RoomStatus.PLAYING: {RoomStatus.FINISHED},
    RoomStatus.FINISHED: set(),
    RoomStatus.CANCELLED: set(),
}


class ActionKind(str, Enum):
    MOVE = "move"
    CHAT = "chat"
    READY = "ready"
    SURRENDER = "surrender"
    OFFER_DRAW = "offer_draw"
    ACCEPT_DRAW = "accept_draw"
    DECLINE_DRAW = "decline_draw"
    TIMEOUT = "timeout"


class EndReason(str, Enum):
    WIN = "win"
    DRAW = "draw"
    SURRENDER = "surrender"
    TIMEOUT = "timeout"


class SessionStatus(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    WAITING = "waiting"
    READY = "ready"
    PLAYING = "playing"
    FINISHED = "finished"


class ChangeTable(str, Enum):
    ROOMS = "rooms"
    ROOM_PLAYERS = "room_players"
    ACTIONS = "actions"


class ChangeOp(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def now_ts() -> str:
    return datetime.now(timezone.utc).isoformat()


# Game-state variants -----------------------------------------------------

GAME_STATE_TYPES: Dict[str, Type["GameState"]] = {}

S = TypeVar("S", bound=Type["GameState"])


def register_game_state(game_id: str):
    """Class decorator: make a GameState subclass decodable under `game_id`."""

    def decorator(cls: S) -> S:
        cls.game_id = game_id
        GAME_STATE_TYPES[game_id] = cls
        return cls

    return decorator


class GameState(ABC):
    """One game's authoritative payload. Subclasses are registered per game id."""

    game_id: ClassVar[str] = ""

    @property
    @abstractmethod
    def turn(self) -> Optional[int]:
        """Seat number expected to act next, or None when nobody is."""

    @abstractmethod
    def to_payload(self) -> Dict[str, Any]:
        ...

    @classmethod
    @abstractmethod
    def from_payload(cls, data: Dict[str, Any]) -> "GameState":
        ...

    @abstractmethod
    def conclude(self, winner: Optional[int], reason: EndReason) -> "GameState":
        """Terminal copy of this state (winner None means a draw)."""

    @property
    def end_reason(self) -> Optional[EndReason]:
        return None

    def check_invariants(self) -> None:
        """Raise StateDesyncError if the state is internally inconsistent."""


@dataclass
class GameStateEnvelope:
    game_id: str
    version: int
    payload: GameState

    def to_dict(self) -> Dict[str, Any]:
        return {"gameId": self.game_id, "version": self.version, "payload": self.payload.to_payload()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GameStateEnvelope":
        game_id = data.get("gameId")
        state_type = GAME_STATE_TYPES.get(game_id) if isinstance(game_id, str) else None
        if state_type is None:
            raise ValidationError(f"Unknown game state type: {game_id!r}")
        version = data.get("version")
        if not isinstance(version, int) or version < 0:
            raise ValidationError("Game state version must be a non-negative integer")
        payload = data.get("payload")
        if not isinstance(payload, dict):
            raise ValidationError("Game state payload must be an object")
        return cls(game_id=game_id, version=version, payload=state_type.from_payload(payload))

    def next(self, payload: GameState) -> "GameStateEnvelope":
        return GameStateEnvelope(game_id=self.game_id, version=self.version + 1, payload=payload)


# Rows -------------------------------------------------------------------


@dataclass
class Room:
    id: str
    game_id: str
    mode: RoomMode
    status: RoomStatus = RoomStatus.WAITING
    max_players: int = 2
    current_players: int = 0
    room_code: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str = field(default_factory=now_ts)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    winner_id: Optional[str] = None
    end_reason: Optional[EndReason] = None
    game_state: Optional[GameStateEnvelope] = None

    @property
    def is_private(self) -> bool:
        return self.room_code is not None

    @property
    def has_free_seat(self) -> bool:
        return self.current_players < self.max_players

    @property
    def state_version(self) -> int:
        return self.game_state.version if self.game_state else 0

    def can_transition(self, status: RoomStatus) -> bool:
        return status == self.status or status in ROOM_TRANSITIONS[self.status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "game_id": self.game_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "max_players": self.max_players,
            "current_players": self.current_players,
            "room_code": self.room_code,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "winner_id": self.winner_id,
            "end_reason": self.end_reason.value if self.end_reason else None,
            "game_state": self.game_state.to_dict() if self.game_state else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Room":
        state = data.get("game_state")
        return cls(
            id=data["id"],
            game_id=data["game_id"],
            mode=RoomMode(data["mode"]),
            status=RoomStatus(data["status"]),
            max_players=data.get("max_players", 2),
            current_players=data.get("current_players", 0),
            room_code=data.get("room_code"),
            created_by=data.get("created_by"),
            created_at=data.get("created_at") or now_ts(),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            winner_id=data.get("winner_id"),
            end_reason=EndReason(data["end_reason"]) if data.get("end_reason") else None,
            game_state=GameStateEnvelope.from_dict(state) if state else None,
        )


@dataclass
class RoomPlayer:
    room_id: str
    user_id: str
    player_number: int
    joined_at: str = field(default_factory=now_ts)
    ready: bool = False
    disconnected: bool = False
    disconnected_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room_id": self.room_id,
            "user_id": self.user_id,
            "player_number": self.player_number,
            "joined_at": self.joined_at,
            "ready": self.ready,
            "disconnected": self.disconnected,
            "disconnected_at": self.disconnected_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoomPlayer":
        return cls(
            room_id=data["room_id"],
            user_id=data["user_id"],
            player_number=data["player_number"],
            joined_at=data.get("joined_at") or now_ts(),
            ready=bool(data.get("ready", False)),
            disconnected=bool(data.get("disconnected", False)),
            disconnected_at=data.get("disconnected_at"),
        )


@dataclass
class GameAction:
    room_id: str
    user_id: Optional[str]
    kind: ActionKind
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = ""
    created_at: str = field(default_factory=now_ts)
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "user_id": self.user_id,
            "action_type": self.kind.value,
            "action_data": dict(self.payload),
            "created_at": self.created_at,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GameAction":
        try:
            kind = ActionKind(data.get("action_type"))
        except ValueError as exc:
            raise ValidationError(f"Invalid action type: {data.get('action_type')!r}") from exc
        return cls(
            id=data.get("id", ""),
            room_id=data["room_id"],
            user_id=data.get("user_id"),
            kind=kind,
            payload=dict(data.get("action_data") or {}),
            created_at=data.get("created_at") or now_ts(),
            sequence=data.get("sequence", 0),
        )


Row = Union[Room, RoomPlayer, GameAction]

ROW_TYPES: Dict[ChangeTable, Any] = {
    ChangeTable.ROOMS: Room,
    ChangeTable.ROOM_PLAYERS: RoomPlayer,
    ChangeTable.ACTIONS: GameAction,
}


@dataclass
class ChangeEvent:
    table: ChangeTable
    operation: ChangeOp
    before: Optional[Row] = None
    after: Optional[Row] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table.value,
            "operation": self.operation.value,
            "before": self.before.to_dict() if self.before is not None else None,
            "after": self.after.to_dict() if self.after is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        table = ChangeTable(data["table"])
        row_type = ROW_TYPES[table]
        before = data.get("before")
        after = data.get("after")
        return cls(
            table=table,
            operation=ChangeOp(data["operation"]),
            before=row_type.from_dict(before) if before else None,
            after=row_type.from_dict(after) if after else None,
        )


# Ratings ----------------------------------------------------------------

DEFAULT_RATING = 1200


@dataclass
class RatingRecord:
    user_id: str
    game_id: str
    mode: RoomMode
    wins: int = 0
    losses: int = 0
    draws: int = 0
    rating: int = DEFAULT_RATING
    highest_rating: int = DEFAULT_RATING
    lowest_rating: int = DEFAULT_RATING
    total_games: int = 0
    win_streak: int = 0
    best_win_streak: int = 0
    loss_streak: int = 0
    worst_loss_streak: int = 0


@dataclass
class MatchOutcome:
    game_id: str
    mode: RoomMode
    winner_id: Optional[str]
    loser_id: Optional[str]
    is_draw: bool = False
    players: Tuple[str, ...] = ()
