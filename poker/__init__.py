"""Heads-up hold'em rules used as the room game-state reducer."""

from .cards import Card, RANKS, SUITS, build_deck, draw, parse_cards, parse_label
from .evaluator import HandRank, HandResult, determine_winners, evaluate_best_hand
from .game import PokerEngine
from .models import MoveType, Phase, PlayerSeat, PlayerStatus, PokerState, TableConfig

__all__ = [
    "Card",
    "RANKS",
    "SUITS",
    "build_deck",
    "draw",
    "parse_cards",
    "parse_label",
    "HandRank",
    "HandResult",
    "determine_winners",
    "evaluate_best_hand",
    "PokerEngine",
    "MoveType",
    "Phase",
    "PlayerSeat",
    "PlayerStatus",
    "PokerState",
    "TableConfig",
]
