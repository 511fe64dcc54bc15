from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import ConflictError, MultiplayerError, TransportError, ValidationError
from .models import (
    ActionKind,
    ChangeEvent,
    ChangeOp,
    ChangeTable,
    EndReason,
    GameAction,
    GameStateEnvelope,
    Room,
    RoomPlayer,
    RoomStatus,
)
from .store import RoomStore, Subscription

LOGGER = logging.getLogger("realtime")

Callback = Optional[Callable[..., Any]]


@dataclass
class RoomCallbacks:
    on_player_join: Callback = None
    on_player_leave: Callback = None
    on_player_ready: Callback = None
    on_game_start: Callback = None
    on_game_state_update: Callback = None
    on_action: Callback = None
    on_game_end: Callback = None
    on_error: Callback = None


class RealtimeSessionClient:
    """Turns a room's change feed into game-level callbacks.

    One client follows one room. Start and end fire once each, echoes of this
    client's own action inserts are dropped, and redelivered notifications are
    filtered by action sequence and state version. A client built without a
    user id is a read-only spectator.
    """

    def __init__(self, store: RoomStore, user_id: Optional[str], callbacks: Optional[RoomCallbacks] = None) -> None:
        self.store = store
        self.user_id = user_id
        self.callbacks = callbacks or RoomCallbacks()
        self.room_id: Optional[str] = None
        self.room: Optional[Room] = None
        self.latest_state: Optional[GameStateEnvelope] = None
        self.subscription: Optional[Subscription] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._started = False
        self._ended = False
        self._last_sequence = 0
        self._state_version = 0

    @property
    def is_spectator(self) -> bool:
        return self.user_id is None

    @property
    def connected(self) -> bool:
        return self.subscription is not None

    async def subscribe(self, room_id: str) -> None:
        if self.subscription is not None:
            raise ConflictError(f"Already subscribed to room {self.room_id}")
        self._reset(room_id)
        self.subscription = await self.store.subscribe(room_id)
        LOGGER.info("Subscribed to room %s as %s", room_id, self.user_id or "spectator")

        # Prime from the current row so a late subscriber still sees start/state.
        try:
            room = await self.store.get_room(room_id)
        except MultiplayerError:
            await self.disconnect()
            raise
        await self._handle_room(room)
        self._pump_task = asyncio.create_task(self._pump(self.subscription))

    async def disconnect(self) -> None:
        task, self._pump_task = self._pump_task, None
        subscription, self.subscription = self.subscription, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if subscription is not None:
            await subscription.close()
            LOGGER.info("Unsubscribed from room %s", self.room_id)

    # Writes ----------------------------------------------------------

    async def send_action(self, kind: ActionKind, payload: Optional[Dict[str, Any]] = None) -> GameAction:
        room_id = self._writable_room()
        try:
            kind = ActionKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Invalid action type: {kind}") from exc
        action = GameAction(room_id=room_id, user_id=self.user_id, kind=kind, payload=dict(payload or {}))
        stored = await self._write(self.store.append_action(action))
        self._last_sequence = max(self._last_sequence, stored.sequence)
        return stored

    async def update_game_state(self, envelope: GameStateEnvelope, expected_version: Optional[int] = None) -> Room:
        room_id = self._writable_room()
        room = await self._write(self.store.write_game_state(room_id, envelope, expected_version))
        if room.game_state is not None and room.game_state.version > self._state_version:
            self._state_version = room.game_state.version
            self.latest_state = room.game_state
        return room

    async def set_ready(self, ready: bool = True) -> RoomPlayer:
        room_id = self._writable_room()
        return await self._write(self.store.update_player(room_id, self.user_id, ready=ready))

    def _writable_room(self) -> str:
        if self.is_spectator:
            raise ValidationError("Spectators cannot write to the room")
        if self.room_id is None:
            raise ConflictError("Not connected to a room")
        return self.room_id

    async def _write(self, pending: Awaitable[Any]) -> Any:
        try:
            return await pending
        except MultiplayerError:
            raise
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportError(str(exc) or "Write failed") from exc

    # Change feed -----------------------------------------------------

    def _reset(self, room_id: str) -> None:
        self.room_id = room_id
        self.room = None
        self.latest_state = None
        self._started = False
        self._ended = False
        self._last_sequence = 0
        self._state_version = 0

    async def _pump(self, subscription: Subscription) -> None:
        try:
            async for event in subscription:
                await self._dispatch(event)
        except asyncio.CancelledError:
            raise
        except MultiplayerError as exc:
            LOGGER.warning("Subscription to room %s failed: %s", self.room_id, exc)
            await self._emit("on_error", exc)
        except (OSError, asyncio.TimeoutError) as exc:
            LOGGER.warning("Subscription to room %s failed: %s", self.room_id, exc)
            await self._emit("on_error", TransportError(str(exc) or "Subscription failed"))

    async def _dispatch(self, event: ChangeEvent) -> None:
        if event.table == ChangeTable.ROOMS:
            if isinstance(event.after, Room):
                await self._handle_room(event.after)
        elif event.table == ChangeTable.ROOM_PLAYERS:
            await self._handle_player(event)
        elif event.table == ChangeTable.ACTIONS and event.operation == ChangeOp.INSERT:
            if isinstance(event.after, GameAction):
                await self._handle_action(event.after)

    async def _handle_room(self, room: Room) -> None:
        self.room = room
        envelope = room.game_state
        if envelope is not None and envelope.version > self._state_version:
            self._state_version = envelope.version
            self.latest_state = envelope
            await self._emit("on_game_state_update", envelope)

        if room.status == RoomStatus.PLAYING and not self._started:
            self._started = True
            LOGGER.info("Room %s game started", room.id)
            await self._emit("on_game_start")
        elif room.status == RoomStatus.FINISHED and not self._ended:
            self._ended = True
            reason = self._end_reason(room)
            LOGGER.info("Room %s finished (%s, winner=%s)", room.id, reason.value, room.winner_id)
            await self._emit("on_game_end", room.winner_id, reason)

    async def _handle_player(self, event: ChangeEvent) -> None:
        before, after = event.before, event.after
        if event.operation == ChangeOp.INSERT and isinstance(after, RoomPlayer):
            await self._emit("on_player_join", after)
        elif event.operation == ChangeOp.DELETE and isinstance(before, RoomPlayer):
            await self._emit("on_player_leave", before.user_id)
        elif event.operation == ChangeOp.UPDATE and isinstance(after, RoomPlayer):
            if before is None or before.ready != after.ready:
                await self._emit("on_player_ready", after.user_id, after.ready, after.player_number)
            if after.disconnected and (before is None or not before.disconnected):
                await self._emit("on_player_leave", after.user_id)

    async def _handle_action(self, action: GameAction) -> None:
        if action.sequence <= self._last_sequence:
            return
        self._last_sequence = action.sequence
        if self.user_id is not None and action.user_id == self.user_id:
            return
        await self._emit("on_action", action)

    def _end_reason(self, room: Room) -> EndReason:
        if room.end_reason is not None:
            return room.end_reason
        if room.game_state is not None:
            reason = room.game_state.payload.end_reason
            if reason is not None:
                return reason
        return EndReason.WIN if room.winner_id else EndReason.DRAW

    async def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("Callback %s failed", name)
            if name != "on_error":
                await self._emit("on_error", exc)
