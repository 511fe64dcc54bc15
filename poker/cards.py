from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

RANKS = "AKQJT98765432"
SUITS = "shdc"
DECK_SIZE = len(RANKS) * len(SUITS)

SUIT_SYMBOLS = {"♠": "s", "♥": "h", "♦": "d", "♣": "c"}


@dataclass(frozen=True)
class Card:
    rank: str
    suit: str

    def __post_init__(self) -> None:
        if self.rank not in RANKS:
            raise ValueError(f"Invalid rank: {self.rank}")
        if self.suit not in SUITS:
            raise ValueError(f"Invalid suit: {self.suit}")

    @property
    def label(self) -> str:
        return f"{self.rank}{self.suit}"


def build_deck(seed: Optional[int] = None, rng: Optional[random.Random] = None) -> List[Card]:
    # random.shuffle is an in-place Fisher-Yates pass.
    rng = rng or random.Random(seed)
    deck = [Card(rank, suit) for suit in SUITS for rank in RANKS[::-1]]
    rng.shuffle(deck)
    return deck


def draw(deck: Sequence[str], index: int, count: int) -> Tuple[List[str], int]:
    """Read `count` labels starting at the deal cursor; return them and the new cursor."""
    if index < 0 or index + count > len(deck):
        raise ValueError("Not enough cards left in deck")
    return list(deck[index : index + count]), index + count


def cards_to_labels(cards: Sequence[Card]) -> List[str]:
    return [card.label for card in cards]


def parse_label(label: str) -> Card:
    text = label.strip()
    if text and text[-1] in SUIT_SYMBOLS:
        text = text[:-1] + SUIT_SYMBOLS[text[-1]]
    if text.startswith("10"):
        text = "T" + text[2:]
    if len(text) != 2:
        raise ValueError(f"Invalid card label: {label}")
    return Card(text[0].upper(), text[1].lower())


def parse_cards(labels: Sequence[str]) -> List[Card]:
    return [parse_label(label) for label in labels]
