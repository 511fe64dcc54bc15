import asyncio

import pytest

from multiplayer.errors import ValidationError
from multiplayer.models import DEFAULT_RATING, RoomMode
from multiplayer.ratings import RATING_FLOOR, EloRatingUpdater, elo_delta, expected_score, outcome_for


def test_expected_score_is_symmetric():
    assert expected_score(1200, 1200) == pytest.approx(0.5)
    assert expected_score(1600, 1200) == pytest.approx(1 / (1 + 10 ** -1))
    assert expected_score(1400, 1200) + expected_score(1200, 1400) == pytest.approx(1.0)


def test_elo_delta_for_even_and_uneven_matches():
    assert elo_delta(1200, 1200, 1.0) == 16
    assert elo_delta(1200, 1200, 0.0) == -16
    assert elo_delta(1200, 1200, 0.5) == 0
    assert elo_delta(1600, 1200, 1.0) == 3
    assert elo_delta(1200, 1600, 1.0) == 29


def test_win_updates_both_records():
    ratings = EloRatingUpdater()
    outcome = outcome_for("poker", RoomMode.RANKED, ("alice", "bob"), "alice")

    records = asyncio.run(ratings.apply(outcome))

    alice, bob = records["alice"], records["bob"]
    assert (alice.rating, alice.wins, alice.win_streak, alice.highest_rating) == (1216, 1, 1, 1216)
    assert (bob.rating, bob.losses, bob.loss_streak, bob.lowest_rating) == (1184, 1, 1, 1184)


def test_draw_resets_streaks():
    ratings = EloRatingUpdater()

    async def scenario():
        await ratings.apply(outcome_for("poker", RoomMode.CASUAL, ("alice", "bob"), "alice"))
        await ratings.apply(outcome_for("poker", RoomMode.CASUAL, ("alice", "bob"), "alice"))
        return await ratings.apply(outcome_for("poker", RoomMode.CASUAL, ("alice", "bob"), None))

    records = asyncio.run(scenario())

    alice = records["alice"]
    assert alice.draws == 1
    assert alice.win_streak == 0
    assert alice.best_win_streak == 2
    assert alice.total_games == 3
    assert records["bob"].worst_loss_streak == 2


def test_records_are_kept_per_game_and_mode():
    ratings = EloRatingUpdater()

    async def scenario():
        await ratings.apply(outcome_for("poker", RoomMode.RANKED, ("alice", "bob"), "alice"))
        await ratings.apply(outcome_for("poker", RoomMode.CASUAL, ("alice", "bob"), "bob"))

    asyncio.run(scenario())

    assert ratings.record("alice", "poker", RoomMode.RANKED).rating == 1216
    assert ratings.record("alice", "poker", RoomMode.CASUAL).rating == 1184
    assert ratings.record("carol", "poker", RoomMode.RANKED).rating == DEFAULT_RATING


def test_rating_never_drops_below_floor():
    ratings = EloRatingUpdater(k_factor=400, initial_rating=150)

    records = asyncio.run(ratings.apply(outcome_for("poker", RoomMode.RANKED, ("alice", "bob"), "bob")))

    assert records["alice"].rating == RATING_FLOOR
    assert records["alice"].lowest_rating == RATING_FLOOR


def test_leaderboard_orders_by_rating():
    ratings = EloRatingUpdater()

    async def scenario():
        await ratings.apply(outcome_for("poker", RoomMode.RANKED, ("alice", "bob"), "bob"))
        await ratings.apply(outcome_for("poker", RoomMode.RANKED, ("carol", "alice"), "carol"))

    asyncio.run(scenario())

    board = ratings.leaderboard("poker", RoomMode.RANKED)
    assert [record.user_id for record in board][0] in ("bob", "carol")
    assert board[-1].user_id == "alice"
    assert len(ratings.leaderboard("poker", RoomMode.RANKED, limit=1)) == 1


@pytest.mark.parametrize(
    "players, winner",
    [
        (("alice",), "alice"),
        (("alice", "alice"), None),
        ((), None),
    ],
)
def test_rated_match_needs_two_players(players, winner):
    ratings = EloRatingUpdater()
    with pytest.raises(ValidationError, match="two distinct players"):
        asyncio.run(ratings.apply(outcome_for("poker", RoomMode.RANKED, players, winner)))
