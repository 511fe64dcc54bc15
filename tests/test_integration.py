import asyncio
import random
from typing import List, Optional

import pytest

from multiplayer.errors import ConflictError, NotYourTurn
from multiplayer.models import ActionKind, EndReason, RoomMode, RoomStatus, SessionStatus
from multiplayer.ratings import EloRatingUpdater
from multiplayer.realtime import RoomCallbacks
from multiplayer.store import InMemoryRoomStore
from poker.match import DEAL_ACTION, PokerMatch
from poker.models import POKER_GAME_ID, MoveType, Phase, TableConfig

CONFIG = TableConfig(starting_stack=1_000, sb=10, bb=20)


async def seated_pair(store: InMemoryRoomStore, ratings: Optional[EloRatingUpdater] = None) -> List[PokerMatch]:
    alice = PokerMatch(store, "alice", config=CONFIG, rng=random.Random(11), rating_updater=ratings)
    bob = PokerMatch(store, "bob", config=CONFIG, rng=random.Random(12), rating_updater=ratings)
    await alice.find_match(RoomMode.RANKED)
    await bob.find_match(RoomMode.RANKED)
    await alice.set_ready()
    await bob.set_ready()
    for _ in range(50):
        await asyncio.sleep(0)
    return [alice, bob]


async def drain() -> None:
    for _ in range(50):
        await asyncio.sleep(0)


async def check_down(matches: List[PokerMatch]) -> None:
    for _ in range(40):
        await drain()
        mover = next((match for match in matches if match.is_my_turn), None)
        if mover is None:
            return
        legal = mover.legal_moves()
        if MoveType.CHECK in legal:
            await mover.check()
        else:
            await mover.call()
    raise AssertionError("hand did not finish")


async def close(matches: List[PokerMatch]) -> None:
    for match in matches:
        if match.session.client is not None:
            await match.session.client.disconnect()


def test_dealer_deals_once_both_seats_are_ready():
    async def scenario():
        store = InMemoryRoomStore()
        matches = await seated_pair(store)
        alice, bob = matches
        actions = await store.list_actions(alice.session.room_id)
        snapshot = (alice.state, bob.state, alice.is_my_turn, bob.is_my_turn, actions)
        await close(matches)
        return snapshot

    alice_state, bob_state, alice_turn, bob_turn, actions = asyncio.run(scenario())

    assert alice_state is not None
    assert bob_state == alice_state
    assert alice_state.phase == Phase.PREFLOP
    assert alice_state.pot == 30
    assert (alice_turn, bob_turn) == (True, False)
    deals = [action for action in actions if action.payload.get("type") == DEAL_ACTION]
    assert len(deals) == 1
    assert deals[0].payload["deck"] == alice_state.deck


def test_full_hand_through_the_room_conserves_chips():
    ratings = EloRatingUpdater()

    async def scenario():
        store = InMemoryRoomStore()
        matches = await seated_pair(store, ratings)
        await check_down(matches)
        await drain()
        room = await store.get_room(matches[0].session.room_id)
        snapshot = (
            room,
            [match.state for match in matches],
            [match.session.status for match in matches],
            [match.session.state.version for match in matches],
        )
        await close(matches)
        return snapshot

    room, states, statuses, versions = asyncio.run(scenario())

    final = room.game_state.payload
    assert room.status == RoomStatus.FINISHED
    assert statuses == [SessionStatus.FINISHED, SessionStatus.FINISHED]
    assert versions == [room.game_state.version, room.game_state.version]
    assert states[0] == states[1] == final
    assert final.phase == Phase.SHOWDOWN
    assert len(final.community_cards) == 5
    assert sum(player.stack for player in final.players) == CONFIG.total_chips
    if final.winner == "draw":
        assert room.winner_id is None
    else:
        assert room.winner_id == ("alice" if final.winner == 1 else "bob")
    assert all(record.total_games == 1 for record in ratings.records.values())
    assert len(ratings.records) == 2


def test_fold_ends_the_match_for_both_clients():
    ends = []

    async def scenario():
        store = InMemoryRoomStore()
        matches = await seated_pair(store)
        alice, bob = matches
        bob.listener = RoomCallbacks(on_game_end=lambda winner, reason: ends.append((winner, reason)))
        events = await alice.fold()
        await drain()
        room = await store.get_room(alice.session.room_id)
        await close(matches)
        return events, room

    events, room = asyncio.run(scenario())

    assert events[0] == {"ev": "FOLD", "seat": 1}
    assert room.winner_id == "bob"
    assert room.game_state.payload.player(2).stack == 1_010
    assert ends == [("bob", EndReason.WIN)]


def test_out_of_turn_move_is_rejected_locally():
    async def scenario():
        store = InMemoryRoomStore()
        matches = await seated_pair(store)
        alice, bob = matches
        try:
            assert bob.legal_moves() == []
            with pytest.raises(NotYourTurn):
                await bob.check()
        finally:
            await close(matches)

    asyncio.run(scenario())


def test_moves_before_the_deal_are_conflicts():
    async def scenario():
        store = InMemoryRoomStore()
        alice = PokerMatch(store, "alice", config=CONFIG)
        await alice.find_match()
        try:
            with pytest.raises(ConflictError, match="Hand not active"):
                await alice.check()
        finally:
            await alice.leave_room()

    asyncio.run(scenario())


def test_bet_and_call_are_logged_as_moves():
    async def scenario():
        store = InMemoryRoomStore()
        matches = await seated_pair(store)
        alice, bob = matches
        await alice.bet(100)
        await drain()
        to_call = bob.call_amount()
        await bob.call()
        await drain()
        actions = await store.list_actions(alice.session.room_id)
        state = alice.state
        await close(matches)
        return to_call, actions, state

    to_call, actions, state = asyncio.run(scenario())

    moves = [action.payload for action in actions if action.kind == ActionKind.MOVE]
    assert moves[1:] == [
        {"type": "bet", "seat": 1, "amount": 100},
        {"type": "call", "seat": 2, "amount": None},
    ]
    assert to_call == 90
    assert state.phase == Phase.FLOP
    assert state.pot == 220


def test_private_room_match_by_code():
    async def scenario():
        store = InMemoryRoomStore()
        alice = PokerMatch(store, "alice", config=CONFIG)
        bob = PokerMatch(store, "bob", config=CONFIG)
        created = await alice.create_private_room()
        joined = await bob.join_by_code(created.room.room_code)
        await alice.set_ready()
        await bob.set_ready()
        await drain()
        snapshot = (created.room.game_id, joined.room.id == created.room.id, bob.state is not None, bob.seat)
        await close([alice, bob])
        return snapshot

    assert asyncio.run(scenario()) == (POKER_GAME_ID, True, True, 2)
