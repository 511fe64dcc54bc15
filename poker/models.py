from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from multiplayer.errors import StateDesyncError, ValidationError
from multiplayer.models import EndReason, GameState, register_game_state

from .cards import DECK_SIZE

POKER_GAME_ID = "poker"
SEATS = (1, 2)

Winner = Union[int, str, None]
DRAW = "draw"


class Phase(str, Enum):
    WAITING = "waiting"
    PREFLOP = "preflop"
    FLOP = "flop"
    TURN = "turn"
    RIVER = "river"
    SHOWDOWN = "showdown"


BETTING_PHASES = (Phase.PREFLOP, Phase.FLOP, Phase.TURN, Phase.RIVER)


class PlayerStatus(str, Enum):
    ACTIVE = "active"
    FOLDED = "folded"


class MoveType(str, Enum):
    FOLD = "fold"
    CHECK = "check"
    CALL = "call"
    BET = "bet"


@dataclass
class TableConfig:
    starting_stack: int = 5_000
    sb: int = 50
    bb: int = 100

    @property
    def total_chips(self) -> int:
        return self.starting_stack * len(SEATS)


@dataclass
class PlayerSeat:
    seat: int
    stack: int
    bet: int = 0
    total_bet: int = 0
    status: PlayerStatus = PlayerStatus.ACTIVE
    hole_cards: List[str] = field(default_factory=list)
    hand_label: Optional[str] = None

    @property
    def has_folded(self) -> bool:
        return self.status == PlayerStatus.FOLDED

    def reset_for_round(self) -> None:
        self.bet = 0


@register_game_state(POKER_GAME_ID)
@dataclass
class PokerState(GameState):
    """Heads-up hold'em state shared through the room's game-state blob."""

    phase: Phase = Phase.WAITING
    current_turn: int = 1
    deck: List[str] = field(default_factory=list)
    deck_index: int = 0
    community_cards: List[str] = field(default_factory=list)
    pot: int = 0
    current_bet: int = 0
    players: List[PlayerSeat] = field(default_factory=list)
    dealer_button: int = 1
    winner: Winner = None
    street_actions: int = 0
    finish_reason: Optional[EndReason] = None

    @classmethod
    def initial(cls, config: TableConfig) -> "PokerState":
        return cls(players=[PlayerSeat(seat=seat, stack=config.starting_stack) for seat in SEATS])

    def player(self, seat: int) -> PlayerSeat:
        if seat not in SEATS:
            raise ValidationError(f"Invalid seat: {seat}")
        return self.players[seat - 1]

    def opponent(self, seat: int) -> PlayerSeat:
        return self.player(other_seat(seat))

    @property
    def non_dealer(self) -> int:
        return other_seat(self.dealer_button)

    @property
    def is_betting(self) -> bool:
        return self.phase in BETTING_PHASES and self.winner is None

    @property
    def total_chips(self) -> int:
        return sum(player.stack for player in self.players) + self.pot

    @property
    def dealt_cards(self) -> List[str]:
        cards: List[str] = []
        for player in self.players:
            cards.extend(player.hole_cards)
        cards.extend(self.community_cards)
        return cards

    def copy(self) -> "PokerState":
        return copy.deepcopy(self)

    # GameState contract ----------------------------------------------

    @property
    def turn(self) -> Optional[int]:
        return self.current_turn if self.is_betting else None

    @property
    def end_reason(self) -> Optional[EndReason]:
        if self.finish_reason is not None:
            return self.finish_reason
        if self.winner is None:
            return None
        return EndReason.DRAW if self.winner == DRAW else EndReason.WIN

    def conclude(self, winner: Optional[int], reason: EndReason) -> "PokerState":
        # A live pot goes to the winner; on a draw each side takes back its own chips.
        state = self.copy()
        if state.pot > 0:
            if winner is not None:
                state.player(winner).stack += state.pot
            else:
                for player in state.players:
                    player.stack += player.total_bet
        for player in state.players:
            player.bet = 0
        state.pot = 0
        state.current_bet = 0
        state.phase = Phase.SHOWDOWN
        state.winner = winner if winner is not None else DRAW
        state.finish_reason = reason
        return state

    def check_invariants(self, total_chips: Optional[int] = None) -> None:
        if len(self.players) != len(SEATS):
            raise StateDesyncError("Poker state must have exactly two seats")
        if self.pot < 0 or any(player.stack < 0 for player in self.players):
            raise StateDesyncError("Negative chip count")
        if total_chips is not None and self.total_chips != total_chips:
            raise StateDesyncError(f"Chip total {self.total_chips} does not match {total_chips}")
        if self.is_betting and self.pot != sum(player.total_bet for player in self.players):
            raise StateDesyncError("Pot does not match committed chips")
        if self.phase != Phase.WAITING:
            dealt = self.dealt_cards
            if len(set(dealt)) != len(dealt):
                raise StateDesyncError("Duplicate card dealt")
            if self.deck_index != len(dealt):
                raise StateDesyncError("Deal cursor out of step with dealt cards")
            if len(self.deck) != DECK_SIZE or len(set(self.deck)) != DECK_SIZE:
                raise StateDesyncError("Deck is not a permutation of 52 cards")
            if any(card not in self.deck[: self.deck_index] for card in dealt):
                raise StateDesyncError("Dealt card was not drawn from the deck")

    # Wire format -----------------------------------------------------

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "phase": self.phase.value,
            "currentTurn": self.current_turn,
            "deck": list(self.deck),
            "deckIndex": self.deck_index,
            "communityCards": list(self.community_cards),
            "pot": self.pot,
            "currentBet": self.current_bet,
            "dealerButton": self.dealer_button,
            "winner": self.winner,
            "streetActions": self.street_actions,
            "endReason": self.finish_reason.value if self.finish_reason else None,
        }
        for player in self.players:
            prefix = f"player{player.seat}"
            payload[f"{prefix}Stack"] = player.stack
            payload[f"{prefix}Bet"] = player.bet
            payload[f"{prefix}TotalBet"] = player.total_bet
            payload[f"{prefix}Status"] = player.status.value
            payload[f"{prefix}HoleCards"] = list(player.hole_cards)
            payload[f"{prefix}HandRank"] = player.hand_label
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "PokerState":
        try:
            players = [
                PlayerSeat(
                    seat=seat,
                    stack=int(data[f"player{seat}Stack"]),
                    bet=int(data.get(f"player{seat}Bet", 0)),
                    total_bet=int(data.get(f"player{seat}TotalBet", 0)),
                    status=PlayerStatus(data.get(f"player{seat}Status", PlayerStatus.ACTIVE.value)),
                    hole_cards=list(data.get(f"player{seat}HoleCards") or []),
                    hand_label=data.get(f"player{seat}HandRank"),
                )
                for seat in SEATS
            ]
            end_reason = data.get("endReason")
            return cls(
                phase=Phase(data.get("phase", Phase.WAITING.value)),
                current_turn=int(data.get("currentTurn", 1)),
                deck=list(data.get("deck") or []),
                deck_index=int(data.get("deckIndex", 0)),
                community_cards=list(data.get("communityCards") or []),
                pot=int(data.get("pot", 0)),
                current_bet=int(data.get("currentBet", 0)),
                players=players,
                dealer_button=int(data.get("dealerButton", 1)),
                winner=data.get("winner"),
                street_actions=int(data.get("streetActions", 0)),
                finish_reason=EndReason(end_reason) if end_reason else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed poker state: {exc}") from exc


def other_seat(seat: int) -> int:
    return 2 if seat == 1 else 1
