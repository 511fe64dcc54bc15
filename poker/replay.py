from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional

from multiplayer.errors import ValidationError
from multiplayer.models import ActionKind, EndReason, GameAction
from multiplayer.store import RoomStore

from .game import Event, PokerEngine
from .match import DEAL_ACTION
from .models import PokerState, TableConfig, other_seat


@dataclass
class ReplayFrame:
    sequence: int
    label: str
    state: PokerState
    seat: Optional[int] = None
    events: List[Event] = field(default_factory=list)


class PokerReplay:
    """Every intermediate table state of one match, rebuilt from its action log."""

    def __init__(self, frames: List[ReplayFrame]) -> None:
        self.frames = frames
        self.position = 0

    @classmethod
    async def load(cls, store: RoomStore, room_id: str, config: Optional[TableConfig] = None) -> "PokerReplay":
        return cls.from_actions(await store.list_actions(room_id), config)

    @classmethod
    def from_actions(cls, actions: Iterable[GameAction], config: Optional[TableConfig] = None) -> "PokerReplay":
        engine = PokerEngine(config)
        frames: List[ReplayFrame] = []
        state: Optional[PokerState] = None

        for action in sorted(actions, key=lambda item: item.sequence):
            payload = action.payload
            if action.kind == ActionKind.MOVE and payload.get("type") == DEAL_ACTION:
                state, events = engine.start_hand(
                    dealer_button=int(payload.get("dealerButton", 1)),
                    deck=payload.get("deck"),
                )
                frames.append(ReplayFrame(action.sequence, DEAL_ACTION, state, events=events))
                continue
            if state is None:
                continue

            if action.kind == ActionKind.MOVE:
                seat = int(payload.get("seat", 0))
                state, events = engine.apply_move(state, seat, payload.get("type"), payload.get("amount"))
                frames.append(ReplayFrame(action.sequence, str(payload.get("type")), state, seat, events))
            elif action.kind in (ActionKind.SURRENDER, ActionKind.TIMEOUT):
                loser = int(payload.get("player", 0))
                reason = EndReason.SURRENDER if action.kind == ActionKind.SURRENDER else EndReason.TIMEOUT
                state = state.conclude(other_seat(loser), reason)
                frames.append(ReplayFrame(action.sequence, action.kind.value, state, loser))
            elif action.kind == ActionKind.ACCEPT_DRAW:
                state = state.conclude(None, EndReason.DRAW)
                frames.append(ReplayFrame(action.sequence, action.kind.value, state))

        if not frames:
            raise ValidationError("No dealt hand in this room's action log")
        return cls(frames)

    def __len__(self) -> int:
        return len(self.frames)

    def __iter__(self) -> Iterator[ReplayFrame]:
        return iter(self.frames)

    @property
    def current(self) -> ReplayFrame:
        return self.frames[self.position]

    @property
    def final_state(self) -> PokerState:
        return self.frames[-1].state

    def seek(self, position: int) -> ReplayFrame:
        self.position = max(0, min(position, len(self.frames) - 1))
        return self.current

    def step(self, delta: int = 1) -> ReplayFrame:
        return self.seek(self.position + delta)
