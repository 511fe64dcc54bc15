from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional

import websockets

from multiplayer.errors import MultiplayerError, TransportError, ValidationError, error_from_code
from multiplayer.models import (
    ChangeEvent,
    EndReason,
    GameAction,
    GameStateEnvelope,
    Room,
    RoomMode,
    RoomPlayer,
    RoomStatus,
)
from multiplayer.store import RoomStore, Subscription

from .protocol import RelayConfig, decode, envelope

LOGGER = logging.getLogger("relay_client")


class RemoteRoomStore(RoomStore):
    """RoomStore backed by a RelayServer. Errors come back as the same exception classes."""

    def __init__(self, url: Optional[str] = None, config: Optional[RelayConfig] = None) -> None:
        self.config = config or RelayConfig()
        self.url = url or self.config.url
        self.websocket: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._ids = itertools.count(1)

    async def connect(self) -> "RemoteRoomStore":
        try:
            self.websocket = await websockets.connect(self.url)
        except OSError as exc:
            raise TransportError(f"Could not reach relay at {self.url}") from exc
        self._reader = asyncio.create_task(self._read_loop())
        LOGGER.info("Connected to relay %s", self.url)
        return self

    async def close(self) -> None:
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            await websocket.close()
        if self._reader is not None:
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

    async def __aenter__(self) -> "RemoteRoomStore":
        return await self.connect()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # RoomStore -------------------------------------------------------

    async def create_room(
        self,
        game_id: str,
        mode: RoomMode,
        *,
        created_by: Optional[str] = None,
        room_code: Optional[str] = None,
        max_players: int = 2,
    ) -> Room:
        data = await self._call(
            "create_room",
            game_id=game_id,
            mode=RoomMode(mode).value,
            created_by=created_by,
            room_code=room_code,
            max_players=max_players,
        )
        return Room.from_dict(data)

    async def get_room(self, room_id: str) -> Room:
        return Room.from_dict(await self._call("get_room", room_id=room_id))

    async def find_room_by_code(self, code: str) -> Optional[Room]:
        data = await self._call("find_room_by_code", code=code)
        return Room.from_dict(data) if data else None

    async def list_rooms(
        self,
        game_id: Optional[str] = None,
        mode: Optional[RoomMode] = None,
        status: Optional[RoomStatus] = RoomStatus.WAITING,
    ) -> List[Room]:
        data = await self._call(
            "list_rooms",
            game_id=game_id,
            mode=RoomMode(mode).value if mode else None,
            status=RoomStatus(status).value if status else None,
        )
        return [Room.from_dict(row) for row in data]

    async def update_room(self, room_id: str, **changes: Any) -> Room:
        if "status" in changes:
            changes["status"] = RoomStatus(changes["status"]).value
        if changes.get("end_reason") is not None:
            changes["end_reason"] = EndReason(changes["end_reason"]).value
        return Room.from_dict(await self._call("update_room", room_id=room_id, changes=changes))

    async def write_game_state(
        self,
        room_id: str,
        envelope: GameStateEnvelope,
        expected_version: Optional[int] = None,
    ) -> Room:
        data = await self._call(
            "write_game_state",
            room_id=room_id,
            envelope=envelope.to_dict(),
            expected_version=expected_version,
        )
        return Room.from_dict(data)

    async def add_player(self, room_id: str, user_id: str) -> RoomPlayer:
        return RoomPlayer.from_dict(await self._call("add_player", room_id=room_id, user_id=user_id))

    async def update_player(self, room_id: str, user_id: str, **changes: Any) -> RoomPlayer:
        data = await self._call("update_player", room_id=room_id, user_id=user_id, changes=changes)
        return RoomPlayer.from_dict(data)

    async def remove_player(self, room_id: str, user_id: str) -> None:
        await self._call("remove_player", room_id=room_id, user_id=user_id)

    async def abandon_room(self, room_id: str, user_id: str) -> bool:
        return bool(await self._call("abandon_room", room_id=room_id, user_id=user_id))

    async def list_players(self, room_id: str) -> List[RoomPlayer]:
        return [RoomPlayer.from_dict(row) for row in await self._call("list_players", room_id=room_id)]

    async def append_action(self, action: GameAction) -> GameAction:
        return GameAction.from_dict(await self._call("append_action", action=action.to_dict()))

    async def list_actions(self, room_id: str, since_sequence: int = 0) -> List[GameAction]:
        rows = await self._call("list_actions", room_id=room_id, since_sequence=since_sequence)
        return [GameAction.from_dict(row) for row in rows]

    async def subscribe(self, room_id: str) -> Subscription:
        request_id = self._next_id()
        subscription = Subscription(room_id, on_close=self._unsubscribe)
        subscription.sub_id = request_id
        # Registered before the request so no change frame can beat the reply.
        self._subscriptions[request_id] = subscription
        try:
            await self._request(request_id, "subscribe", {"room_id": room_id})
        except MultiplayerError:
            self._subscriptions.pop(request_id, None)
            raise
        return subscription

    async def _unsubscribe(self, subscription: Subscription) -> None:
        sub_id = subscription.sub_id
        if sub_id is None or self._subscriptions.pop(sub_id, None) is None:
            return
        if self.websocket is None:
            return
        try:
            await self.websocket.send(envelope("unsubscribe", {"id": self._next_id(), "sub": sub_id}))
        except websockets.ConnectionClosed:
            pass

    # Wire ------------------------------------------------------------

    def _next_id(self) -> str:
        return str(next(self._ids))

    async def _call(self, method: str, **params: Any) -> Any:
        return await self._request(self._next_id(), "call", {"method": method, "params": params})

    async def _request(self, request_id: str, msg_type: str, payload: Dict[str, Any]) -> Any:
        if self.websocket is None:
            raise TransportError("Not connected to relay")
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            try:
                await self.websocket.send(envelope(msg_type, {"id": request_id, **payload}))
            except websockets.ConnectionClosed as exc:
                raise TransportError("Relay connection closed") from exc
            try:
                return await asyncio.wait_for(future, timeout=self.config.request_timeout)
            except asyncio.TimeoutError as exc:
                raise TransportError(f"Relay did not answer {msg_type} in time") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        try:
            async for raw in self.websocket:
                self._dispatch(decode(raw))
        except websockets.ConnectionClosed:
            pass
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(TransportError("Relay connection closed"))
            for subscription in self._subscriptions.values():
                subscription.fail(TransportError("Relay connection closed"))
            self._subscriptions.clear()

    def _dispatch(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type == "change":
            subscription = self._subscriptions.get(str(message.get("sub")))
            if subscription is None:
                return
            try:
                subscription.push(ChangeEvent.from_dict(message.get("event") or {}))
            except (KeyError, ValueError) as exc:
                subscription.fail(exc if isinstance(exc, ValidationError) else ValidationError(str(exc)))
            return

        future = self._pending.get(str(message.get("id")))
        if future is None or future.done():
            return
        if msg_type == "result":
            future.set_result(message.get("result"))
        elif msg_type == "error":
            future.set_exception(error_from_code(str(message.get("code")), str(message.get("msg", ""))))
        else:
            future.set_exception(TransportError(f"Unexpected frame type {msg_type}"))
