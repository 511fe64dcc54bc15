from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import websockets

from multiplayer.errors import MultiplayerError, TransportError, ValidationError
from multiplayer.models import GameAction, GameStateEnvelope, RoomMode, RoomStatus
from multiplayer.store import InMemoryRoomStore, Subscription

from .protocol import RelayConfig, decode, envelope

LOGGER = logging.getLogger("relay")

# RelayServer puts one InMemoryRoomStore behind websockets so clients in other
# processes share rooms. The store keeps every rule; this class only moves JSON.

Params = Dict[str, Any]
RpcHandler = Callable[[Params], Awaitable[Any]]


class RelayServer:
    def __init__(self, store: Optional[InMemoryRoomStore] = None, config: Optional[RelayConfig] = None) -> None:
        self.store = store or InMemoryRoomStore()
        self.config = config or RelayConfig()
        self.connections = 0
        self.methods: Dict[str, RpcHandler] = {
            "create_room": self._rpc_create_room,
            "get_room": self._rpc_get_room,
            "find_room_by_code": self._rpc_find_room_by_code,
            "list_rooms": self._rpc_list_rooms,
            "update_room": self._rpc_update_room,
            "write_game_state": self._rpc_write_game_state,
            "add_player": self._rpc_add_player,
            "update_player": self._rpc_update_player,
            "remove_player": self._rpc_remove_player,
            "abandon_room": self._rpc_abandon_room,
            "list_players": self._rpc_list_players,
            "append_action": self._rpc_append_action,
            "list_actions": self._rpc_list_actions,
        }

    async def start(self) -> None:
        async with websockets.serve(self._handle_connection, self.config.host, self.config.port):
            LOGGER.info("Relay listening on %s:%s", self.config.host, self.config.port)
            await asyncio.Future()

    async def _handle_connection(self, websocket: Any) -> None:
        self.connections += 1
        LOGGER.info("Client connected (%s open)", self.connections)
        subscriptions: Dict[str, Tuple[Subscription, asyncio.Task]] = {}
        try:
            async for raw in websocket:
                await self._handle_message(websocket, decode(raw), subscriptions)
        except websockets.ConnectionClosed:
            pass
        finally:
            for subscription, task in list(subscriptions.values()):
                task.cancel()
                await subscription.close()
            self.connections -= 1
            LOGGER.info("Client disconnected (%s open)", self.connections)

    async def _handle_message(
        self,
        websocket: Any,
        message: Dict[str, Any],
        subscriptions: Dict[str, Tuple[Subscription, asyncio.Task]],
    ) -> None:
        msg_type = message.get("type")
        request_id = message.get("id")
        if msg_type == "call":
            await self._handle_call(websocket, request_id, message.get("method"), message.get("params") or {})
        elif msg_type == "subscribe":
            await self._handle_subscribe(websocket, request_id, message.get("room_id"), subscriptions)
        elif msg_type == "unsubscribe":
            entry = subscriptions.pop(str(message.get("sub")), None)
            if entry is not None:
                subscription, task = entry
                task.cancel()
                await subscription.close()
            await self._send_result(websocket, request_id, None)
        else:
            await self._send_error(websocket, request_id, ValidationError.code, "Unsupported message type")

    async def _handle_call(self, websocket: Any, request_id: Any, method: Any, params: Any) -> None:
        handler = self.methods.get(method) if isinstance(method, str) else None
        if handler is None:
            await self._send_error(websocket, request_id, ValidationError.code, f"Unknown method: {method}")
            return
        if not isinstance(params, dict):
            await self._send_error(websocket, request_id, ValidationError.code, "params must be an object")
            return
        try:
            result = await handler(params)
        except MultiplayerError as exc:
            LOGGER.debug("Call %s rejected: %s %s", method, exc.code, exc.msg)
            await self._send_error(websocket, request_id, exc.code, exc.msg)
        except (KeyError, TypeError, ValueError) as exc:
            await self._send_error(websocket, request_id, ValidationError.code, f"Bad params for {method}: {exc}")
        except Exception as exc:
            LOGGER.exception("Call %s failed", method)
            await self._send_error(websocket, request_id, TransportError.code, str(exc) or "Relay failure")
        else:
            await self._send_result(websocket, request_id, result)

    async def _handle_subscribe(
        self,
        websocket: Any,
        request_id: Any,
        room_id: Any,
        subscriptions: Dict[str, Tuple[Subscription, asyncio.Task]],
    ) -> None:
        if not isinstance(room_id, str) or request_id is None:
            await self._send_error(websocket, request_id, ValidationError.code, "room_id and id required")
            return
        try:
            subscription = await self.store.subscribe(room_id)
        except MultiplayerError as exc:
            await self._send_error(websocket, request_id, exc.code, exc.msg)
            return
        sub_id = str(request_id)
        # Reply first so the client has the subscription registered before changes flow.
        await self._send_result(websocket, request_id, {"sub": sub_id, "room_id": room_id})
        task = asyncio.create_task(self._forward_changes(websocket, sub_id, subscription))
        subscriptions[sub_id] = (subscription, task)
        LOGGER.info("Client subscribed to room %s", room_id)

    async def _forward_changes(self, websocket: Any, sub_id: str, subscription: Subscription) -> None:
        async for event in subscription:
            await self._send_json(
                websocket,
                "change",
                {"sub": sub_id, "room_id": subscription.room_id, "event": event.to_dict()},
            )

    # RPC methods -----------------------------------------------------

    async def _rpc_create_room(self, params: Params) -> Any:
        room = await self.store.create_room(
            params["game_id"],
            RoomMode(params["mode"]),
            created_by=params.get("created_by"),
            room_code=params.get("room_code"),
            max_players=params.get("max_players", 2),
        )
        return room.to_dict()

    async def _rpc_get_room(self, params: Params) -> Any:
        return (await self.store.get_room(params["room_id"])).to_dict()

    async def _rpc_find_room_by_code(self, params: Params) -> Any:
        room = await self.store.find_room_by_code(params["code"])
        return room.to_dict() if room else None

    async def _rpc_list_rooms(self, params: Params) -> Any:
        mode = params.get("mode")
        status = params.get("status")
        rooms = await self.store.list_rooms(
            game_id=params.get("game_id"),
            mode=RoomMode(mode) if mode else None,
            status=RoomStatus(status) if status else None,
        )
        return [room.to_dict() for room in rooms]

    async def _rpc_update_room(self, params: Params) -> Any:
        return (await self.store.update_room(params["room_id"], **params.get("changes", {}))).to_dict()

    async def _rpc_write_game_state(self, params: Params) -> Any:
        room = await self.store.write_game_state(
            params["room_id"],
            GameStateEnvelope.from_dict(params["envelope"]),
            params.get("expected_version"),
        )
        return room.to_dict()

    async def _rpc_add_player(self, params: Params) -> Any:
        return (await self.store.add_player(params["room_id"], params["user_id"])).to_dict()

    async def _rpc_update_player(self, params: Params) -> Any:
        player = await self.store.update_player(params["room_id"], params["user_id"], **params.get("changes", {}))
        return player.to_dict()

    async def _rpc_remove_player(self, params: Params) -> Any:
        await self.store.remove_player(params["room_id"], params["user_id"])
        return None

    async def _rpc_abandon_room(self, params: Params) -> Any:
        return await self.store.abandon_room(params["room_id"], params["user_id"])

    async def _rpc_list_players(self, params: Params) -> Any:
        return [player.to_dict() for player in await self.store.list_players(params["room_id"])]

    async def _rpc_append_action(self, params: Params) -> Any:
        return (await self.store.append_action(GameAction.from_dict(params["action"]))).to_dict()

    async def _rpc_list_actions(self, params: Params) -> Any:
        actions = await self.store.list_actions(params["room_id"], params.get("since_sequence", 0))
        return [action.to_dict() for action in actions]

    # Wire helpers ----------------------------------------------------

    async def _send_result(self, websocket: Any, request_id: Any, result: Any) -> None:
        await self._send_json(websocket, "result", {"id": request_id, "result": result})

    async def _send_error(self, websocket: Any, request_id: Any, code: str, msg: str) -> None:
        await self._send_json(websocket, "error", {"id": request_id, "code": code, "msg": msg})

    async def _send_json(self, websocket: Any, msg_type: str, payload: Dict[str, Any]) -> None:
        try:
            await websocket.send(envelope(msg_type, payload))
        except websockets.ConnectionClosed:
            pass
