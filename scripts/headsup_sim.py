#!/usr/bin/env python3
"""Play heads-up poker matches between two random bots.

Both bots go through matchmaking, ready up, and play every hand through the
room store exactly like real clients do. By default the store lives
in-process; pass --relay to play through a running relay instead
(`python -m relay`).

Example:
    python scripts/headsup_sim.py --matches 20 --seed 7
    python scripts/headsup_sim.py --relay ws://127.0.0.1:8765 --matches 5
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import random
from collections import Counter
from typing import List, Optional, Tuple

from multiplayer.errors import ConflictError, ValidationError
from multiplayer.models import EndReason, RoomMode, SessionStatus
from multiplayer.ratings import EloRatingUpdater
from multiplayer.realtime import RoomCallbacks
from multiplayer.store import InMemoryRoomStore, RoomStore
from poker.match import PokerMatch
from poker.models import MoveType, TableConfig
from relay.client import RemoteRoomStore

LOGGER = logging.getLogger("headsup_sim")


def choose_move(match: PokerMatch, rng: random.Random) -> Tuple[MoveType, Optional[int]]:
    """Pick a random legal move, leaning towards passive play."""
    legal = match.legal_moves()
    state = match.state
    if not legal or state is None or match.seat is None:
        return MoveType.FOLD, None

    weights = {MoveType.CHECK: 5, MoveType.CALL: 4, MoveType.BET: 2, MoveType.FOLD: 1}
    move = rng.choices(legal, weights=[weights[option] for option in legal])[0]
    if move != MoveType.BET:
        return move, None

    player = state.player(match.seat)
    to_call = state.current_bet - player.bet
    minimum = to_call + match.engine.config.bb
    if player.stack <= minimum or rng.random() < 0.1:
        return MoveType.BET, player.stack
    return MoveType.BET, rng.randint(minimum, min(player.stack, minimum * 4))


def safe_move(match: PokerMatch) -> MoveType:
    legal = match.legal_moves()
    if MoveType.CHECK in legal:
        return MoveType.CHECK
    if MoveType.CALL in legal:
        return MoveType.CALL
    return MoveType.FOLD


class SimBot:
    def __init__(self, name: str, store: RoomStore, config: TableConfig, ratings: EloRatingUpdater, seed: int) -> None:
        self.name = name
        self.rng = random.Random(seed)
        self.wake = asyncio.Event()
        self.match = PokerMatch(
            store,
            name,
            config=config,
            rating_updater=ratings,
            rng=self.rng,
            listener=RoomCallbacks(
                on_game_start=self.wake.set,
                on_game_state_update=lambda envelope: self.wake.set(),
                on_game_end=lambda winner_id, reason: self.wake.set(),
            ),
        )

    async def play(self) -> None:
        session = self.match.session
        while session.status != SessionStatus.FINISHED:
            await self.wake.wait()
            self.wake.clear()
            while self.match.is_my_turn:
                move, amount = choose_move(self.match, self.rng)
                try:
                    await self._apply(move, amount)
                except (ConflictError, ValidationError) as exc:
                    LOGGER.warning("%s move %s rejected (%s); playing safe", self.name, move.value, exc)
                    await self._apply(safe_move(self.match), None)

    async def _apply(self, move: MoveType, amount: Optional[int]) -> None:
        if move == MoveType.BET:
            await self.match.bet(int(amount or 0))
        elif move == MoveType.CALL:
            await self.match.call()
        elif move == MoveType.CHECK:
            await self.match.check()
        else:
            await self.match.fold()


async def open_store(relay_url: Optional[str], shared: InMemoryRoomStore) -> RoomStore:
    if relay_url is None:
        return shared
    return await RemoteRoomStore(relay_url).connect()


async def play_match(
    index: int,
    args: argparse.Namespace,
    shared: InMemoryRoomStore,
    ratings: EloRatingUpdater,
) -> Tuple[Optional[str], Optional[EndReason]]:
    config = TableConfig(starting_stack=args.starting_stack, sb=args.sb, bb=args.bb)
    stores: List[RoomStore] = [await open_store(args.relay, shared) for _ in range(2)]
    bots = [
        SimBot(f"SimBot{seat}", store, config, ratings, args.seed + index * 2 + seat)
        for seat, store in enumerate(stores)
    ]
    try:
        for bot in bots:
            await bot.match.find_match(RoomMode.RANKED)
        for bot in bots:
            await bot.match.set_ready(True)
        await asyncio.wait_for(asyncio.gather(*(bot.play() for bot in bots)), timeout=args.timeout)
        session = bots[0].match.session
        return session.winner_id, session.end_reason
    finally:
        for bot in bots:
            with contextlib.suppress(ConflictError):
                await bot.match.leave_room()
        for store in stores:
            if isinstance(store, RemoteRoomStore):
                await store.close()


async def run_simulation(args: argparse.Namespace) -> None:
    shared = InMemoryRoomStore()
    ratings = EloRatingUpdater()
    tally: Counter = Counter()

    for index in range(args.matches):
        try:
            winner, reason = await play_match(index, args, shared, ratings)
        except asyncio.TimeoutError:
            LOGGER.warning("Match %s timed out", index + 1)
            tally["timed out"] += 1
            continue
        tally[winner or "draw"] += 1
        LOGGER.info("Match %s: %s (%s)", index + 1, winner or "draw", reason.value if reason else "?")

    LOGGER.info("Results: %s", dict(tally))
    for record in ratings.leaderboard("poker", RoomMode.RANKED):
        LOGGER.info(
            "%s rating=%s W/L/D=%s/%s/%s best streak=%s",
            record.user_id,
            record.rating,
            record.wins,
            record.losses,
            record.draws,
            record.best_win_streak,
        )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run heads-up poker matches between random bots")
    parser.add_argument("--relay", default=None, help="relay URL; omit to keep everything in-process")
    parser.add_argument("--matches", type=int, default=10)
    parser.add_argument("--starting-stack", type=int, default=5_000)
    parser.add_argument("--sb", type=int, default=50)
    parser.add_argument("--bb", type=int, default=100)
    parser.add_argument("--timeout", type=float, default=30.0, help="max seconds per match")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    try:
        asyncio.run(run_simulation(args))
    except KeyboardInterrupt:
        LOGGER.info("Simulation interrupted; shutting down")


if __name__ == "__main__":
    main()
