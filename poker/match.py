from __future__ import annotations

import inspect
import logging
import random
from typing import Any, List, Optional

from multiplayer.errors import ConflictError, NotYourTurn
from multiplayer.matchmaking import JoinResult, MatchmakingConfig
from multiplayer.models import ActionKind, EndReason, GameAction, GameState, GameStateEnvelope, RoomMode
from multiplayer.ratings import RatingUpdater
from multiplayer.realtime import RoomCallbacks
from multiplayer.session import ClientFactory, SessionOrchestrator
from multiplayer.store import RoomStore

from .game import Event, PokerEngine
from .models import DRAW, POKER_GAME_ID, MoveType, PokerState, TableConfig

LOGGER = logging.getLogger("poker_match")

DEAL_ACTION = "deal"


class PokerMatch:
    """Heads-up hold'em played through a SessionOrchestrator.

    The dealer-button seat deals once the room reports the game started. After
    that whoever acts computes the next state and writes it; the other side
    only merges what arrives. Every deal and move is also appended to the
    room's action log so the hand can be replayed.
    """

    def __init__(
        self,
        store: RoomStore,
        user_id: str,
        *,
        config: Optional[TableConfig] = None,
        listener: Optional[RoomCallbacks] = None,
        rating_updater: Optional[RatingUpdater] = None,
        matchmaking_config: Optional[MatchmakingConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        rng: Optional[random.Random] = None,
        dealer_button: int = 1,
    ) -> None:
        self.engine = PokerEngine(config)
        self.listener = listener or RoomCallbacks()
        self.rng = rng
        self.dealer_button = dealer_button
        self.last_events: List[Event] = []
        self.session = SessionOrchestrator(
            store,
            user_id,
            callbacks=RoomCallbacks(
                on_player_join=lambda *args: self._forward("on_player_join", *args),
                on_player_leave=lambda *args: self._forward("on_player_leave", *args),
                on_player_ready=lambda *args: self._forward("on_player_ready", *args),
                on_game_start=self._on_game_start,
                on_game_state_update=self._on_game_state_update,
                on_action=self._on_action,
                on_game_end=lambda *args: self._forward("on_game_end", *args),
                on_error=lambda *args: self._forward("on_error", *args),
            ),
            rating_updater=rating_updater,
            matchmaking_config=matchmaking_config,
            client_factory=client_factory,
            state_validator=self._validate_state,
        )

    # Lobby -----------------------------------------------------------

    async def find_match(self, mode: RoomMode = RoomMode.CASUAL) -> JoinResult:
        return await self.session.find_match(POKER_GAME_ID, mode)

    async def create_private_room(self, mode: RoomMode = RoomMode.CASUAL) -> JoinResult:
        return await self.session.create_private_room(POKER_GAME_ID, mode)

    async def join_by_code(self, code: str) -> JoinResult:
        return await self.session.join_by_code(code)

    async def set_ready(self, ready: bool = True) -> None:
        await self.session.set_ready(ready)

    async def leave_room(self) -> None:
        await self.session.leave_room()

    async def cancel_search(self) -> bool:
        return await self.session.cancel_search()

    # Table view ------------------------------------------------------

    @property
    def state(self) -> Optional[PokerState]:
        envelope = self.session.state
        return envelope.payload if envelope is not None else None  # type: ignore[return-value]

    @property
    def seat(self) -> Optional[int]:
        return self.session.player_number

    @property
    def is_my_turn(self) -> bool:
        return self.session.is_my_turn

    @property
    def is_dealer(self) -> bool:
        return self.seat == self.dealer_button

    def legal_moves(self) -> List[MoveType]:
        state = self.state
        if state is None or self.seat is None or not self.is_my_turn:
            return []
        return self.engine.legal_moves(state, self.seat)

    def call_amount(self) -> int:
        state = self.state
        if state is None or self.seat is None:
            return 0
        return self.engine.call_amount(state, self.seat)

    # Moves -----------------------------------------------------------

    async def fold(self) -> List[Event]:
        return await self._play(MoveType.FOLD)

    async def check(self) -> List[Event]:
        return await self._play(MoveType.CHECK)

    async def call(self) -> List[Event]:
        return await self._play(MoveType.CALL)

    async def bet(self, amount: int) -> List[Event]:
        return await self._play(MoveType.BET, amount)

    async def surrender(self) -> None:
        await self.session.surrender()

    async def _play(self, move: MoveType, amount: Optional[int] = None) -> List[Event]:
        state = self.state
        if state is None:
            raise ConflictError("Hand not active")
        if not self.is_my_turn or self.seat is None:
            raise NotYourTurn("Not your turn")

        next_state, events = self.engine.apply_move(state, self.seat, move, amount)
        await self.session.update_game_state(next_state)
        await self.session.send_action(
            ActionKind.MOVE,
            {"type": move.value, "seat": self.seat, "amount": amount if move == MoveType.BET else None},
        )
        self.last_events = events
        LOGGER.debug("Seat %s played %s (%s)", self.seat, move.value, amount)

        if next_state.winner is not None:
            if next_state.winner == DRAW:
                await self.session.finish_game(None, EndReason.DRAW)
            else:
                await self.session.finish_game(int(next_state.winner), EndReason.WIN)
        return events

    # Room notifications ----------------------------------------------

    async def _on_game_start(self) -> None:
        if self.is_dealer and self.session.state is None:
            await self._deal()
        await self._forward("on_game_start")

    async def _deal(self) -> None:
        state, events = self.engine.start_hand(rng=self.rng, dealer_button=self.dealer_button)
        await self.session.update_game_state(state)
        await self.session.send_action(
            ActionKind.MOVE,
            {"type": DEAL_ACTION, "deck": list(state.deck), "dealerButton": state.dealer_button},
        )
        self.last_events = events
        LOGGER.info("Seat %s dealt a new hand in room %s", self.seat, self.session.room_id)

    def _validate_state(self, state: GameState) -> None:
        if isinstance(state, PokerState):
            state.check_invariants(self.engine.config.total_chips)

    async def _on_game_state_update(self, envelope: GameStateEnvelope) -> None:
        await self._forward("on_game_state_update", envelope)

    async def _on_action(self, action: GameAction) -> None:
        await self._forward("on_action", action)

    async def _forward(self, name: str, *args: Any) -> None:
        callback = getattr(self.listener, name)
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

