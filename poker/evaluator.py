"""Texas Hold'em hand evaluation: best five of up to seven cards."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .cards import Card

RANK_ORDER = "23456789TJQKA"
RANK_VALUE = {rank: idx for idx, rank in enumerate(RANK_ORDER, start=2)}

# Rank values top out at 14, so base 15 keeps every tiebreak digit in its own slot.
RADIX = 15
CATEGORY_WEIGHT = RADIX ** 5


class HandRank(str, Enum):
    HIGH_CARD = "high_card"
    ONE_PAIR = "one_pair"
    TWO_PAIR = "two_pair"
    THREE_OF_A_KIND = "three_of_a_kind"
    STRAIGHT = "straight"
    FLUSH = "flush"
    FULL_HOUSE = "full_house"
    FOUR_OF_A_KIND = "four_of_a_kind"
    STRAIGHT_FLUSH = "straight_flush"
    ROYAL_FLUSH = "royal_flush"


CATEGORY: Dict[HandRank, int] = {rank: idx for idx, rank in enumerate(HandRank)}

HAND_LABELS: Dict[HandRank, str] = {
    HandRank.ROYAL_FLUSH: "Royal Flush",
    HandRank.STRAIGHT_FLUSH: "Straight Flush",
    HandRank.FOUR_OF_A_KIND: "Four of a Kind",
    HandRank.FULL_HOUSE: "Full House",
    HandRank.FLUSH: "Flush",
    HandRank.STRAIGHT: "Straight",
    HandRank.THREE_OF_A_KIND: "Three of a Kind",
    HandRank.TWO_PAIR: "Two Pair",
    HandRank.ONE_PAIR: "One Pair",
    HandRank.HIGH_CARD: "High Card",
}

PLACEHOLDER_LABEL = "-"


@dataclass
class HandResult:
    rank: HandRank
    score: int
    label: str
    best_cards: List[Card] = field(default_factory=list)
    comparable: bool = True


def evaluate_best_hand(hole: Sequence[Card], community: Sequence[Card]) -> HandResult:
    """Score the best five-card hand out of the hole and community cards.

    With fewer than five cards (pre-flop) a placeholder comes back that must
    not be compared against anything; it only exists for display.
    """
    cards = list(hole) + list(community)
    if len(cards) > 7:
        raise ValueError("At most 7 cards can be evaluated")
    if len(cards) < 5:
        return HandResult(
            rank=HandRank.HIGH_CARD,
            score=0,
            label=PLACEHOLDER_LABEL,
            best_cards=cards,
            comparable=False,
        )

    best: Optional[HandResult] = None
    for combo in itertools.combinations(cards, 5):
        result = score_five(combo)
        if best is None or result.score > best.score:
            best = result
    assert best is not None
    return best


def determine_winners(results: Sequence[HandResult]) -> List[int]:
    """Indices of every result holding the top score (split pots for ties)."""
    if not results:
        return []
    top = max(result.score for result in results)
    return [idx for idx, result in enumerate(results) if result.score == top]


def score_five(cards: Iterable[Card]) -> HandResult:
    hand = list(cards)
    if len(hand) != 5:
        raise ValueError("score_five expects exactly 5 cards")
    rank, tiebreak = _classify(hand)
    return HandResult(rank=rank, score=encode_score(rank, tiebreak), label=HAND_LABELS[rank], best_cards=hand)


def encode_score(rank: HandRank, tiebreak: Sequence[int]) -> int:
    score = CATEGORY[rank] * CATEGORY_WEIGHT
    for position, value in enumerate(tiebreak[:5]):
        score += value * RADIX ** (4 - position)
    return score


def _classify(cards: List[Card]) -> Tuple[HandRank, List[int]]:
    ranks = sorted((RANK_VALUE[card.rank] for card in cards), reverse=True)
    is_flush = len({card.suit for card in cards}) == 1
    straight_high = _straight_high(ranks)

    counts: Dict[int, int] = {}
    for value in ranks:
        counts[value] = counts.get(value, 0) + 1

    # Bigger groups first, then higher rank: primary group, secondary group, kickers.
    ordered = sorted(counts.items(), key=lambda item: (item[1], item[0]), reverse=True)
    groups = [value for value, _ in ordered]
    shape = [count for _, count in ordered]

    if straight_high and is_flush:
        if straight_high == 14:
            return HandRank.ROYAL_FLUSH, [straight_high]
        return HandRank.STRAIGHT_FLUSH, [straight_high]
    if shape[0] == 4:
        return HandRank.FOUR_OF_A_KIND, groups
    if shape[0] == 3 and shape[1] == 2:
        return HandRank.FULL_HOUSE, groups
    if is_flush:
        return HandRank.FLUSH, ranks
    if straight_high:
        return HandRank.STRAIGHT, [straight_high]
    if shape[0] == 3:
        return HandRank.THREE_OF_A_KIND, groups
    if shape[0] == 2 and shape[1] == 2:
        return HandRank.TWO_PAIR, groups
    if shape[0] == 2:
        return HandRank.ONE_PAIR, groups
    return HandRank.HIGH_CARD, ranks


def _straight_high(ranks: List[int]) -> Optional[int]:
    distinct = sorted(set(ranks), reverse=True)
    if len(distinct) != 5:
        return None
    if distinct[0] - distinct[4] == 4:
        return distinct[0]
    # Wheel: the ace plays low only here.
    if distinct == [14, 5, 4, 3, 2]:
        return 5
    return None
