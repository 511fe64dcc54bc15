from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .errors import ConflictError, RoomFull, RoomNotFound, RoomNotJoinable, StaleStateError, ValidationError
from .models import (
    ActionKind,
    ChangeEvent,
    ChangeOp,
    ChangeTable,
    EndReason,
    GameAction,
    GameStateEnvelope,
    Room,
    RoomMode,
    RoomPlayer,
    RoomStatus,
    now_ts,
)

LOGGER = logging.getLogger("room_store")

ROOM_FIELDS = {"status", "started_at", "finished_at", "winner_id", "end_reason"}
PLAYER_FIELDS = {"ready", "disconnected", "disconnected_at"}

_CLOSED = object()


class Subscription:
    """Async iterator of ChangeEvents for one room.

    The store pushes into the queue; `fail` delivers an exception to the reader
    and `close` ends iteration.
    """

    def __init__(self, room_id: str, on_close: Optional[Callable[["Subscription"], Awaitable[None]]] = None) -> None:
        self.room_id = room_id
        self.sub_id: Optional[str] = None
        self.closed = False
        self._queue: "asyncio.Queue[Union[ChangeEvent, BaseException, object]]" = asyncio.Queue()
        self._on_close = on_close

    def push(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def fail(self, exc: BaseException) -> None:
        if not self.closed:
            self._queue.put_nowait(exc)

    async def get(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item  # type: ignore[return-value]

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self.get()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            await self._on_close(self)


class RoomStore(ABC):
    """Shared rows every client reads and writes. All operations are coroutines."""

    @abstractmethod
    async def create_room(
        self,
        game_id: str,
        mode: RoomMode,
        *,
        created_by: Optional[str] = None,
        room_code: Optional[str] = None,
        max_players: int = 2,
    ) -> Room:
        ...

    @abstractmethod
    async def get_room(self, room_id: str) -> Room:
        ...

    @abstractmethod
    async def find_room_by_code(self, code: str) -> Optional[Room]:
        ...

    @abstractmethod
    async def list_rooms(
        self,
        game_id: Optional[str] = None,
        mode: Optional[RoomMode] = None,
        status: Optional[RoomStatus] = RoomStatus.WAITING,
    ) -> List[Room]:
        ...

    @abstractmethod
    async def update_room(self, room_id: str, **changes: Any) -> Room:
        ...

    @abstractmethod
    async def write_game_state(
        self,
        room_id: str,
        envelope: GameStateEnvelope,
        expected_version: Optional[int] = None,
    ) -> Room:
        ...

    @abstractmethod
    async def add_player(self, room_id: str, user_id: str) -> RoomPlayer:
        ...

    @abstractmethod
    async def update_player(self, room_id: str, user_id: str, **changes: Any) -> RoomPlayer:
        ...

    @abstractmethod
    async def remove_player(self, room_id: str, user_id: str) -> None:
        ...

    @abstractmethod
    async def abandon_room(self, room_id: str, user_id: str) -> bool:
        """Cancel a waiting room and free its only seat, if that seat is `user_id`'s.

        Returns False and changes nothing once anyone else holds a seat.
        """

    @abstractmethod
    async def list_players(self, room_id: str) -> List[RoomPlayer]:
        ...

    @abstractmethod
    async def append_action(self, action: GameAction) -> GameAction:
        ...

    @abstractmethod
    async def list_actions(self, room_id: str, since_sequence: int = 0) -> List[GameAction]:
        ...

    @abstractmethod
    async def subscribe(self, room_id: str) -> Subscription:
        ...


class InMemoryRoomStore(RoomStore):
    """Process-local RoomStore. One lock serialises every mutation."""

    def __init__(self, id_factory: Optional[Callable[[], str]] = None) -> None:
        self.rooms: Dict[str, Room] = {}
        self.players: Dict[str, Dict[str, RoomPlayer]] = {}
        self.actions: Dict[str, List[GameAction]] = {}
        self.subscribers: Dict[str, List[Subscription]] = {}
        self.lock = asyncio.Lock()
        self._sequence = 0
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

    # Rooms -----------------------------------------------------------

    async def create_room(
        self,
        game_id: str,
        mode: RoomMode,
        *,
        created_by: Optional[str] = None,
        room_code: Optional[str] = None,
        max_players: int = 2,
    ) -> Room:
        if not isinstance(game_id, str) or not game_id.strip():
            raise ValidationError("gameId is required")
        try:
            mode = RoomMode(mode)
        except ValueError as exc:
            raise ValidationError(f"Invalid mode: {mode}") from exc
        if not isinstance(max_players, int) or max_players < 1:
            raise ValidationError("maxPlayers must be a positive integer")
        code = room_code.upper() if room_code else None

        async with self.lock:
            if code is not None and self._waiting_room_with_code(code) is not None:
                raise ConflictError(f"Room code {code} already in use")
            room = Room(
                id=self._id_factory(),
                game_id=game_id,
                mode=mode,
                max_players=max_players,
                room_code=code,
                created_by=created_by,
            )
            self.rooms[room.id] = room
            self.players[room.id] = {}
            self.actions[room.id] = []
            LOGGER.info("Room %s created for %s (%s)", room.id, game_id, mode.value)
            self._publish(room.id, ChangeEvent(ChangeTable.ROOMS, ChangeOp.INSERT, after=room))
            return copy.deepcopy(room)

    async def get_room(self, room_id: str) -> Room:
        return copy.deepcopy(self._room(room_id))

    async def find_room_by_code(self, code: str) -> Optional[Room]:
        if not isinstance(code, str) or not code.strip():
            raise ValidationError("roomCode is required")
        code = code.strip().upper()
        room = self._waiting_room_with_code(code)
        if room is None:
            # A started room keeps its code; joining it then reports not joinable.
            matches = [candidate for candidate in self.rooms.values() if candidate.room_code == code]
            room = max(matches, key=lambda candidate: candidate.created_at) if matches else None
        return copy.deepcopy(room) if room else None

    async def list_rooms(
        self,
        game_id: Optional[str] = None,
        mode: Optional[RoomMode] = None,
        status: Optional[RoomStatus] = RoomStatus.WAITING,
    ) -> List[Room]:
        rooms = [
            room
            for room in self.rooms.values()
            if (game_id is None or room.game_id == game_id)
            and (mode is None or room.mode == mode)
            and (status is None or room.status == status)
        ]
        rooms.sort(key=lambda room: room.created_at)
        return [copy.deepcopy(room) for room in rooms]

    async def update_room(self, room_id: str, **changes: Any) -> Room:
        unknown = set(changes) - ROOM_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update room fields: {', '.join(sorted(unknown))}")
        if changes.get("end_reason") is not None:
            try:
                changes["end_reason"] = EndReason(changes["end_reason"])
            except ValueError as exc:
                raise ValidationError(f"Invalid end reason: {changes['end_reason']}") from exc
        async with self.lock:
            room = self._room(room_id)
            before = copy.deepcopy(room)
            if "status" in changes:
                status = RoomStatus(changes.pop("status"))
                self._transition(room, status)
            for name, value in changes.items():
                setattr(room, name, value)
            self._publish(room_id, ChangeEvent(ChangeTable.ROOMS, ChangeOp.UPDATE, before=before, after=room))
            return copy.deepcopy(room)

    async def write_game_state(
        self,
        room_id: str,
        envelope: GameStateEnvelope,
        expected_version: Optional[int] = None,
    ) -> Room:
        if not isinstance(envelope, GameStateEnvelope):
            raise ValidationError("gameState must be a GameStateEnvelope")
        async with self.lock:
            room = self._room(room_id)
            if envelope.game_id != room.game_id:
                raise ValidationError(f"Game state for {envelope.game_id} written to a {room.game_id} room")
            if room.status in (RoomStatus.FINISHED, RoomStatus.CANCELLED):
                raise ConflictError("Room is closed")
            if expected_version is not None and room.state_version != expected_version:
                raise StaleStateError(
                    f"Game state is at version {room.state_version}, write expected {expected_version}"
                )
            before = copy.deepcopy(room)
            stored = copy.deepcopy(envelope)
            stored.version = room.state_version + 1
            room.game_state = stored
            LOGGER.debug("Room %s game state now at version %s", room_id, stored.version)
            self._publish(room_id, ChangeEvent(ChangeTable.ROOMS, ChangeOp.UPDATE, before=before, after=room))
            return copy.deepcopy(room)

    # Players ---------------------------------------------------------

    async def add_player(self, room_id: str, user_id: str) -> RoomPlayer:
        if not isinstance(user_id, str) or not user_id:
            raise ValidationError("userId is required")
        async with self.lock:
            room = self._room(room_id)
            seats = self.players[room_id]
            existing = seats.get(user_id)
            if existing is not None:
                return copy.deepcopy(existing)
            if room.status != RoomStatus.WAITING:
                raise RoomNotJoinable("Room is no longer accepting players")
            if not room.has_free_seat:
                raise RoomFull("Room is full")

            taken = {player.player_number for player in seats.values()}
            number = next(n for n in range(1, room.max_players + 1) if n not in taken)
            player = RoomPlayer(room_id=room_id, user_id=user_id, player_number=number)
            seats[user_id] = player
            room_before = copy.deepcopy(room)
            room.current_players = len(seats)
            LOGGER.info("User %s took seat %s in room %s", user_id, number, room_id)
            self._publish(room_id, ChangeEvent(ChangeTable.ROOM_PLAYERS, ChangeOp.INSERT, after=player))
            self._publish(room_id, ChangeEvent(ChangeTable.ROOMS, ChangeOp.UPDATE, before=room_before, after=room))
            return copy.deepcopy(player)

    async def update_player(self, room_id: str, user_id: str, **changes: Any) -> RoomPlayer:
        unknown = set(changes) - PLAYER_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update player fields: {', '.join(sorted(unknown))}")
        async with self.lock:
            room = self._room(room_id)
            player = self._player(room_id, user_id)
            before = copy.deepcopy(player)
            for name, value in changes.items():
                setattr(player, name, value)
            if changes.get("disconnected") and not player.disconnected_at:
                player.disconnected_at = now_ts()
            self._publish(
                room_id, ChangeEvent(ChangeTable.ROOM_PLAYERS, ChangeOp.UPDATE, before=before, after=player)
            )
            self._maybe_start(room)
            return copy.deepcopy(player)

    async def remove_player(self, room_id: str, user_id: str) -> None:
        async with self.lock:
            room = self._room(room_id)
            player = self._player(room_id, user_id)
            del self.players[room_id][user_id]
            room_before = copy.deepcopy(room)
            room.current_players = len(self.players[room_id])
            LOGGER.info("User %s left seat %s in room %s", user_id, player.player_number, room_id)
            self._publish(room_id, ChangeEvent(ChangeTable.ROOM_PLAYERS, ChangeOp.DELETE, before=player))
            self._publish(room_id, ChangeEvent(ChangeTable.ROOMS, ChangeOp.UPDATE, before=room_before, after=room))

    async def abandon_room(self, room_id: str, user_id: str) -> bool:
        async with self.lock:
            room = self._room(room_id)
            seats = self.players[room_id]
            if room.status != RoomStatus.WAITING or list(seats) != [user_id]:
                return False
            player = seats.pop(user_id)
            room_before = copy.deepcopy(room)
            room.current_players = 0
            self._transition(room, RoomStatus.CANCELLED)
            LOGGER.info("User %s abandoned room %s", user_id, room_id)
            self._publish(room_id, ChangeEvent(ChangeTable.ROOM_PLAYERS, ChangeOp.DELETE, before=player))
            self._publish(room_id, ChangeEvent(ChangeTable.ROOMS, ChangeOp.UPDATE, before=room_before, after=room))
            return True

    async def list_players(self, room_id: str) -> List[RoomPlayer]:
        self._room(room_id)
        players = sorted(self.players[room_id].values(), key=lambda player: player.player_number)
        return [copy.deepcopy(player) for player in players]

    # Actions ---------------------------------------------------------

    async def append_action(self, action: GameAction) -> GameAction:
        if not isinstance(action, GameAction):
            raise ValidationError("action must be a GameAction")
        try:
            kind = ActionKind(action.kind)
        except ValueError as exc:
            raise ValidationError(f"Invalid action type: {action.kind}") from exc
        async with self.lock:
            self._room(action.room_id)
            if action.user_id is not None and action.user_id not in self.players[action.room_id]:
                raise ValidationError("Only seated players can act in this room")
            self._sequence += 1
            stored = GameAction(
                room_id=action.room_id,
                user_id=action.user_id,
                kind=kind,
                payload=copy.deepcopy(action.payload),
                id=action.id or self._id_factory(),
                sequence=self._sequence,
            )
            self.actions[action.room_id].append(stored)
            LOGGER.debug("Room %s action #%s %s by %s", action.room_id, stored.sequence, kind.value, action.user_id)
            self._publish(action.room_id, ChangeEvent(ChangeTable.ACTIONS, ChangeOp.INSERT, after=stored))
            return copy.deepcopy(stored)

    async def list_actions(self, room_id: str, since_sequence: int = 0) -> List[GameAction]:
        self._room(room_id)
        return [copy.deepcopy(action) for action in self.actions[room_id] if action.sequence > since_sequence]

    # Change feed -----------------------------------------------------

    async def subscribe(self, room_id: str) -> Subscription:
        self._room(room_id)
        subscription = Subscription(room_id, on_close=self._unsubscribe)
        self.subscribers.setdefault(room_id, []).append(subscription)
        LOGGER.debug("Subscriber attached to room %s", room_id)
        return subscription

    async def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self.subscribers.get(subscription.room_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    def _publish(self, room_id: str, event: ChangeEvent) -> None:
        # Each subscriber gets its own snapshot of the rows.
        for subscription in list(self.subscribers.get(room_id, [])):
            subscription.push(copy.deepcopy(event))

    # Internals (caller holds the lock for mutations) -------------------

    def _room(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            raise RoomNotFound("Room not found")
        return room

    def _player(self, room_id: str, user_id: str) -> RoomPlayer:
        player = self.players[room_id].get(user_id)
        if player is None:
            raise ValidationError("Not in this room")
        return player

    def _waiting_room_with_code(self, code: str) -> Optional[Room]:
        for room in self.rooms.values():
            if room.room_code == code and room.status == RoomStatus.WAITING:
                return room
        return None

    def _transition(self, room: Room, status: RoomStatus) -> None:
        if not room.can_transition(status):
            raise ConflictError(f"Room cannot move from {room.status.value} to {status.value}")
        if status == room.status:
            return
        room.status = status
        if status == RoomStatus.PLAYING:
            room.started_at = now_ts()
        elif status in (RoomStatus.FINISHED, RoomStatus.CANCELLED):
            room.finished_at = now_ts()
        LOGGER.info("Room %s is now %s", room.id, status.value)

    def _maybe_start(self, room: Room) -> None:
        if room.status != RoomStatus.WAITING or room.has_free_seat:
            return
        seats = list(self.players[room.id].values())
        if not seats or not all(player.ready for player in seats):
            return
        before = copy.deepcopy(room)
        self._transition(room, RoomStatus.PLAYING)
        self._publish(room.id, ChangeEvent(ChangeTable.ROOMS, ChangeOp.UPDATE, before=before, after=room))
