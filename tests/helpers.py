from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from multiplayer.errors import StateDesyncError
from multiplayer.models import EndReason, GameState, register_game_state
from poker.cards import RANKS, SUITS
from poker.game import Event, PokerEngine
from poker.models import MoveType, PokerState, TableConfig

COUNTER_GAME_ID = "counter"


@register_game_state(COUNTER_GAME_ID)
@dataclass
class CounterState(GameState):
    """Two players take turns bumping a number; small enough to test the room plumbing."""

    value: int = 0
    current_turn: int = 1
    winner: Optional[int] = None
    reason: Optional[EndReason] = None

    @property
    def turn(self) -> Optional[int]:
        return None if self.reason else self.current_turn

    @property
    def end_reason(self) -> Optional[EndReason]:
        return self.reason

    def bump(self) -> "CounterState":
        return CounterState(value=self.value + 1, current_turn=2 if self.current_turn == 1 else 1)

    def conclude(self, winner: Optional[int], reason: EndReason) -> "CounterState":
        return CounterState(value=self.value, current_turn=self.current_turn, winner=winner, reason=reason)

    def check_invariants(self) -> None:
        if self.value < 0:
            raise StateDesyncError("Counter went negative")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "currentTurn": self.current_turn,
            "winner": self.winner,
            "endReason": self.reason.value if self.reason else None,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CounterState":
        reason = data.get("endReason")
        return cls(
            value=int(data.get("value", 0)),
            current_turn=int(data.get("currentTurn", 1)),
            winner=data.get("winner"),
            reason=EndReason(reason) if reason else None,
        )


async def settle(rounds: int = 50) -> None:
    """Let subscription pumps drain everything the in-memory store queued."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def create_engine(*, starting_stack: int = 5_000, sb: int = 50, bb: int = 100) -> PokerEngine:
    return PokerEngine(TableConfig(starting_stack=starting_stack, sb=sb, bb=bb))


def start_hand(engine: PokerEngine, seed: int = 42) -> PokerState:
    state, _ = engine.start_hand(seed=seed)
    return state


def rigged_deck(seat1: Sequence[str], seat2: Sequence[str], board: Sequence[str]) -> List[str]:
    """A full deck that deals the given hole cards and board in order."""
    top = [seat1[0], seat2[0], seat1[1], seat2[1], *board]
    rest = [f"{rank}{suit}" for suit in SUITS for rank in RANKS if f"{rank}{suit}" not in top]
    return top + rest


def perform_moves(
    engine: PokerEngine,
    state: PokerState,
    moves: Iterable[Tuple[int, MoveType, Optional[int]]],
) -> Tuple[PokerState, List[Event]]:
    """Apply a scripted sequence of (seat, move, amount)."""
    events: List[Event] = []
    for seat, move, amount in moves:
        state, new_events = engine.apply_move(state, seat, move, amount)
        events.extend(new_events)
    return state, events


def auto_complete_hand(engine: PokerEngine, state: PokerState) -> PokerState:
    """Check or call down until the hand is over."""
    while state.is_betting:
        seat = state.current_turn
        legal = engine.legal_moves(state, seat)
        if MoveType.CHECK in legal:
            state, _ = engine.apply_move(state, seat, MoveType.CHECK)
        elif MoveType.CALL in legal:
            state, _ = engine.apply_move(state, seat, MoveType.CALL)
        else:
            state, _ = engine.apply_move(state, seat, MoveType.FOLD)
    return state
