from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from .errors import ValidationError
from .models import DEFAULT_RATING, MatchOutcome, RatingRecord, RoomMode

LOGGER = logging.getLogger("ratings")

K_FACTOR = 32
RATING_FLOOR = 100


def expected_score(rating: int, opponent: int) -> float:
    return 1.0 / (1.0 + 10 ** ((opponent - rating) / 400.0))


def elo_delta(rating: int, opponent: int, score: float, k_factor: int = K_FACTOR) -> int:
    """Rating change for one player; score is 1 for a win, 0.5 for a draw, 0 for a loss."""
    return int(round(k_factor * (score - expected_score(rating, opponent))))


class RatingUpdater(ABC):
    @abstractmethod
    async def apply(self, outcome: MatchOutcome) -> Dict[str, RatingRecord]:
        """Record one finished match and return the updated record of each participant."""


class EloRatingUpdater(RatingUpdater):
    """Keeps per (user, game, mode) records in memory and moves ratings by ELO."""

    def __init__(self, k_factor: int = K_FACTOR, initial_rating: int = DEFAULT_RATING) -> None:
        self.k_factor = k_factor
        self.initial_rating = initial_rating
        self.records: Dict[Tuple[str, str, RoomMode], RatingRecord] = {}
        self.lock = asyncio.Lock()

    def record(self, user_id: str, game_id: str, mode: RoomMode) -> RatingRecord:
        key = (user_id, game_id, RoomMode(mode))
        record = self.records.get(key)
        if record is None:
            record = RatingRecord(
                user_id=user_id,
                game_id=game_id,
                mode=RoomMode(mode),
                rating=self.initial_rating,
                highest_rating=self.initial_rating,
                lowest_rating=self.initial_rating,
            )
            self.records[key] = record
        return record

    def leaderboard(self, game_id: str, mode: RoomMode, limit: int = 10) -> List[RatingRecord]:
        rows = [record for (_, game, room_mode), record in self.records.items() if game == game_id and room_mode == mode]
        rows.sort(key=lambda record: (-record.rating, -record.wins, record.user_id))
        return rows[:limit]

    async def apply(self, outcome: MatchOutcome) -> Dict[str, RatingRecord]:
        participants = self._participants(outcome)
        async with self.lock:
            first, second = (self.record(user_id, outcome.game_id, outcome.mode) for user_id in participants)
            if outcome.is_draw:
                first_score = 0.5
            else:
                first_score = 1.0 if first.user_id == outcome.winner_id else 0.0
            first_delta = elo_delta(first.rating, second.rating, first_score, self.k_factor)
            second_delta = elo_delta(second.rating, first.rating, 1.0 - first_score, self.k_factor)
            self._settle(first, first_delta, first_score)
            self._settle(second, second_delta, 1.0 - first_score)
            LOGGER.info(
                "Ratings %s: %s %s (%+d), %s %s (%+d)",
                outcome.game_id,
                first.user_id,
                first.rating,
                first_delta,
                second.user_id,
                second.rating,
                second_delta,
            )
            return {first.user_id: first, second.user_id: second}

    def _participants(self, outcome: MatchOutcome) -> Tuple[str, str]:
        if outcome.is_draw:
            players = tuple(outcome.players)
        else:
            players = (outcome.winner_id, outcome.loser_id)
        if len(players) != 2 or not all(players) or players[0] == players[1]:
            raise ValidationError("A rated match needs two distinct players")
        return players[0], players[1]  # type: ignore[return-value]

    def _settle(self, record: RatingRecord, delta: int, score: float) -> None:
        record.total_games += 1
        record.rating = max(RATING_FLOOR, record.rating + delta)
        record.highest_rating = max(record.highest_rating, record.rating)
        record.lowest_rating = min(record.lowest_rating, record.rating)
        if score == 1.0:
            record.wins += 1
            record.win_streak += 1
            record.loss_streak = 0
            record.best_win_streak = max(record.best_win_streak, record.win_streak)
        elif score == 0.0:
            record.losses += 1
            record.loss_streak += 1
            record.win_streak = 0
            record.worst_loss_streak = max(record.worst_loss_streak, record.loss_streak)
        else:
            record.draws += 1
            record.win_streak = 0
            record.loss_streak = 0


def outcome_for(
    game_id: str,
    mode: RoomMode,
    players: Tuple[str, ...],
    winner_id: Optional[str],
) -> MatchOutcome:
    if winner_id is None:
        return MatchOutcome(game_id=game_id, mode=mode, winner_id=None, loser_id=None, is_draw=True, players=players)
    losers = [user_id for user_id in players if user_id != winner_id]
    return MatchOutcome(
        game_id=game_id,
        mode=mode,
        winner_id=winner_id,
        loser_id=losers[0] if losers else None,
        players=players,
    )
