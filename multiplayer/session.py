from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import (
    ConflictError,
    MultiplayerError,
    RoomNotFound,
    StateDesyncError,
    TransportError,
    ValidationError,
    user_message,
)
from .matchmaking import JoinResult, MatchmakingConfig, MatchmakingService
from .models import (
    ActionKind,
    EndReason,
    GameAction,
    GameState,
    GameStateEnvelope,
    Room,
    RoomMode,
    RoomPlayer,
    RoomStatus,
    SessionStatus,
    now_ts,
)
from .ratings import RatingUpdater, outcome_for
from .realtime import RealtimeSessionClient, RoomCallbacks
from .store import RoomStore

LOGGER = logging.getLogger("session")

MAX_CHAT_LENGTH = 200
MAX_CHAT_HISTORY = 100
EMOTES: Dict[str, str] = {
    "gg": "GG",
    "gl": "Good Luck",
    "nice": "Nice!",
    "wow": "Wow",
    "think": "Thinking...",
    "hurry": "Hurry!",
    "wave": "Hi!",
    "laugh": "Haha",
}
RATED_MODES = (RoomMode.RANKED, RoomMode.CASUAL)

ClientFactory = Callable[[RoomStore, Optional[str], RoomCallbacks], RealtimeSessionClient]


@dataclass
class ChatMessage:
    user_id: Optional[str]
    kind: str
    content: str
    own: bool = False
    created_at: str = field(default_factory=now_ts)


class SessionOrchestrator:
    """One user's path through a multiplayer match.

    idle -> searching -> waiting -> (ready) -> playing -> finished. Local
    status never moves into playing on its own; only the room notification
    does. `callbacks` receive the same events after local bookkeeping.
    """

    def __init__(
        self,
        store: RoomStore,
        user_id: str,
        *,
        callbacks: Optional[RoomCallbacks] = None,
        matchmaking_config: Optional[MatchmakingConfig] = None,
        rating_updater: Optional[RatingUpdater] = None,
        client_factory: Optional[ClientFactory] = None,
        state_validator: Optional[Callable[[GameState], None]] = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.callbacks = callbacks or RoomCallbacks()
        self.matchmaking = MatchmakingService(store, user_id, matchmaking_config)
        self.rating_updater = rating_updater
        self.client_factory: ClientFactory = client_factory or RealtimeSessionClient
        self.state_validator = state_validator
        self.client: Optional[RealtimeSessionClient] = None
        self._reset()

    def _reset(self) -> None:
        self.status = SessionStatus.IDLE
        self.room: Optional[Room] = None
        self.players: List[RoomPlayer] = []
        self.player_number: Optional[int] = None
        self.state: Optional[GameStateEnvelope] = None
        self.error: Optional[str] = None
        self.winner_id: Optional[str] = None
        self.end_reason: Optional[EndReason] = None
        self.chat: List[ChatMessage] = []
        self.draw_offered_by: Optional[str] = None
        self._finishing = False
        self._rating_reported = False

    # Derived ---------------------------------------------------------

    @property
    def room_id(self) -> Optional[str]:
        return self.room.id if self.room else None

    @property
    def is_my_turn(self) -> bool:
        if self.status != SessionStatus.PLAYING or self.state is None:
            return False
        return self.state.payload.turn == self.player_number

    @property
    def opponent(self) -> Optional[RoomPlayer]:
        for player in self.players:
            if player.user_id != self.user_id:
                return player
        return None

    def user_for_seat(self, player_number: Optional[int]) -> Optional[str]:
        for player in self.players:
            if player.player_number == player_number:
                return player.user_id
        return None

    # Entering a room -------------------------------------------------

    async def find_match(self, game_id: str, mode: RoomMode = RoomMode.CASUAL) -> JoinResult:
        return await self._enter(lambda: self.matchmaking.find_match(game_id, mode))

    async def create_private_room(self, game_id: str, mode: RoomMode = RoomMode.CASUAL) -> JoinResult:
        return await self._enter(lambda: self.matchmaking.create_private_room(game_id, mode))

    async def join_by_code(self, code: str) -> JoinResult:
        return await self._enter(lambda: self.matchmaking.join_by_code(code))

    async def _enter(self, join: Callable[[], Awaitable[JoinResult]]) -> JoinResult:
        if self.status not in (SessionStatus.IDLE, SessionStatus.FINISHED):
            raise ConflictError("Already in a room")
        if self.client is not None:
            await self.client.disconnect()
            self.client = None
        self._reset()
        self.status = SessionStatus.SEARCHING
        try:
            result = await join()
            self.room = result.room
            self.players = list(result.players)
            self.player_number = result.player_number
            self.status = SessionStatus.WAITING
            self.client = self.client_factory(self.store, self.user_id, self._room_callbacks())
            await self.client.subscribe(result.room.id)
        except MultiplayerError as exc:
            LOGGER.warning("User %s could not enter a room: %s", self.user_id, exc)
            self.error = user_message(exc)
            self.status = SessionStatus.IDLE
            raise
        return result

    async def set_ready(self, ready: bool = True) -> None:
        client = self._require_client()
        await client.set_ready(ready)
        if self.status in (SessionStatus.WAITING, SessionStatus.READY):
            self.status = SessionStatus.READY if ready else SessionStatus.WAITING

    async def cancel_search(self) -> bool:
        room_id = self.room_id
        changed = await self.matchmaking.cancel_search()
        if not changed and room_id is not None:
            # An opponent already holds the other seat.
            try:
                await self.matchmaking.leave_room(room_id)
            except RoomNotFound:
                pass
        await self._detach()
        return changed

    async def leave_room(self) -> None:
        room_id = self.room_id
        if room_id is not None:
            try:
                await self.matchmaking.leave_room(room_id)
            except RoomNotFound:
                pass
        await self._detach()

    async def _detach(self) -> None:
        if self.client is not None:
            await self.client.disconnect()
            self.client = None
        self._reset()

    # Game traffic ----------------------------------------------------

    async def send_action(self, kind: ActionKind, payload: Optional[Dict[str, Any]] = None) -> GameAction:
        return await self._require_client().send_action(kind, payload)

    async def update_game_state(self, state: GameState) -> GameStateEnvelope:
        """Write the next version computed from the local replica."""
        client = self._require_client()
        if self.room is None:
            raise ConflictError("Not in a room")
        current = self.state.version if self.state else 0
        envelope = GameStateEnvelope(game_id=self.room.game_id, version=current + 1, payload=state)
        room = await client.update_game_state(envelope, expected_version=current)
        self.room = room
        self.state = room.game_state
        return self.state  # type: ignore[return-value]

    async def surrender(self) -> None:
        self._require_playing()
        opponent = self.opponent
        winner_number = opponent.player_number if opponent else None
        await self.send_action(ActionKind.SURRENDER, {"player": self.player_number})
        await self.finish_game(winner_number, EndReason.SURRENDER)

    async def record_timeout(self, timed_out_number: int) -> None:
        """Finish the game against a seat that ran out of time."""
        self._require_playing()
        winner_number = next(
            (player.player_number for player in self.players if player.player_number != timed_out_number),
            None,
        )
        await self.send_action(ActionKind.TIMEOUT, {"player": timed_out_number})
        await self.finish_game(winner_number, EndReason.TIMEOUT)

    async def finish_game(self, winner_number: Optional[int], reason: EndReason) -> None:
        self._require_playing()
        self._finishing = True
        if self.state is not None and self.state.payload.end_reason is None:
            await self.update_game_state(self.state.payload.conclude(winner_number, reason))
        winner_id = self.user_for_seat(winner_number)
        try:
            room = await self.store.update_room(
                self.room_id, status=RoomStatus.FINISHED, winner_id=winner_id, end_reason=reason
            )
        except OSError as exc:
            raise TransportError(str(exc) or "Write failed") from exc
        self.room = room
        LOGGER.info("Room %s finished by %s (%s)", room.id, self.user_id, reason.value)

    # Chat ------------------------------------------------------------

    async def send_chat(self, text: str) -> Optional[ChatMessage]:
        trimmed = (text or "").strip()[:MAX_CHAT_LENGTH]
        if not trimmed:
            return None
        await self.send_action(ActionKind.CHAT, {"type": "text", "content": trimmed})
        return self._remember_chat(self.user_id, "text", trimmed, own=True)

    async def send_emote(self, emote_id: str) -> ChatMessage:
        if emote_id not in EMOTES:
            raise ValidationError(f"Unknown emote: {emote_id}")
        await self.send_action(ActionKind.CHAT, {"type": "emote", "content": emote_id})
        return self._remember_chat(self.user_id, "emote", emote_id, own=True)

    def _remember_chat(self, user_id: Optional[str], kind: str, content: str, own: bool = False) -> ChatMessage:
        message = ChatMessage(user_id=user_id, kind=kind, content=content, own=own)
        self.chat.append(message)
        del self.chat[:-MAX_CHAT_HISTORY]
        return message

    # Draw offers -----------------------------------------------------

    async def offer_draw(self) -> None:
        self._require_playing()
        if self.draw_offered_by is not None:
            raise ConflictError("A draw offer is already pending")
        await self.send_action(ActionKind.OFFER_DRAW, {"player": self.player_number})
        self.draw_offered_by = self.user_id

    async def accept_draw(self) -> None:
        self._require_playing()
        if self.draw_offered_by is None or self.draw_offered_by == self.user_id:
            raise ConflictError("No draw offer to accept")
        await self.send_action(ActionKind.ACCEPT_DRAW, {"player": self.player_number})
        self.draw_offered_by = None
        await self.finish_game(None, EndReason.DRAW)

    async def decline_draw(self) -> None:
        self._require_playing()
        if self.draw_offered_by is None or self.draw_offered_by == self.user_id:
            raise ConflictError("No draw offer to decline")
        await self.send_action(ActionKind.DECLINE_DRAW, {"player": self.player_number})
        self.draw_offered_by = None

    # Room notifications ----------------------------------------------

    def _room_callbacks(self) -> RoomCallbacks:
        return RoomCallbacks(
            on_player_join=self._on_player_join,
            on_player_leave=self._on_player_leave,
            on_player_ready=self._on_player_ready,
            on_game_start=self._on_game_start,
            on_game_state_update=self._on_game_state_update,
            on_action=self._on_action,
            on_game_end=self._on_game_end,
            on_error=self._on_error,
        )

    async def _on_player_join(self, player: RoomPlayer) -> None:
        if all(existing.user_id != player.user_id for existing in self.players):
            self.players.append(player)
            self.players.sort(key=lambda seat: seat.player_number)
        await self._forward("on_player_join", player)

    async def _on_player_leave(self, user_id: str) -> None:
        await self._forward("on_player_leave", user_id)

    async def _on_player_ready(self, user_id: str, ready: bool, player_number: int) -> None:
        for player in self.players:
            if player.user_id == user_id:
                player.ready = ready
        await self._forward("on_player_ready", user_id, ready, player_number)

    async def _on_game_start(self) -> None:
        self.status = SessionStatus.PLAYING
        self.draw_offered_by = None
        self.winner_id = None
        self.end_reason = None
        if self.client is not None and self.client.room is not None:
            self.room = self.client.room
        LOGGER.info("User %s playing in room %s as player %s", self.user_id, self.room_id, self.player_number)
        await self._forward("on_game_start")

    async def _on_game_state_update(self, envelope: GameStateEnvelope) -> None:
        if self.state is not None and envelope.version <= self.state.version:
            return
        try:
            envelope.payload.check_invariants()
            if self.state_validator is not None:
                self.state_validator(envelope.payload)
        except StateDesyncError as exc:
            # Keep the last good replica; the writer is responsible for fixing it.
            LOGGER.warning("Rejected game state v%s in room %s: %s", envelope.version, self.room_id, exc)
            await self._on_error(exc)
            return
        self.state = envelope
        await self._forward("on_game_state_update", envelope)

    async def _on_action(self, action: GameAction) -> None:
        if action.kind == ActionKind.CHAT:
            content = str(action.payload.get("content", ""))[:MAX_CHAT_LENGTH]
            kind = "emote" if action.payload.get("type") == "emote" else "text"
            self._remember_chat(action.user_id, kind, content)
        elif action.kind == ActionKind.OFFER_DRAW:
            self.draw_offered_by = action.user_id
        elif action.kind in (ActionKind.DECLINE_DRAW, ActionKind.ACCEPT_DRAW):
            self.draw_offered_by = None
        await self._forward("on_action", action)

    async def _on_game_end(self, winner_id: Optional[str], reason: EndReason) -> None:
        self.status = SessionStatus.FINISHED
        self.winner_id = winner_id
        self.end_reason = reason
        if self.client is not None and self.client.room is not None:
            self.room = self.client.room
        if self._finishing:
            await self._report_rating(winner_id)
        await self._forward("on_game_end", winner_id, reason)

    async def _on_error(self, exc: BaseException) -> None:
        self.error = user_message(exc)
        await self._forward("on_error", exc)

    async def _report_rating(self, winner_id: Optional[str]) -> None:
        if self.rating_updater is None or self._rating_reported or self.room is None:
            return
        if self.room.mode not in RATED_MODES:
            return
        self._rating_reported = True
        players = tuple(player.user_id for player in self.players)
        try:
            await self.rating_updater.apply(outcome_for(self.room.game_id, self.room.mode, players, winner_id))
        except TransportError as exc:
            LOGGER.warning("Rating report for room %s failed: %s", self.room.id, exc)

    async def _forward(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    # Guards ----------------------------------------------------------

    def _require_client(self) -> RealtimeSessionClient:
        if self.client is None:
            raise ConflictError("Not connected to a room")
        return self.client

    def _require_playing(self) -> None:
        if self.status != SessionStatus.PLAYING:
            raise ConflictError("Game is not in progress")
