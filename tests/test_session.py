import asyncio
from typing import List, Optional, Tuple

import pytest

from multiplayer.errors import (
    GENERIC_TRANSPORT_MESSAGE,
    ConflictError,
    RoomNotFound,
    StaleStateError,
    StateDesyncError,
    TransportError,
    ValidationError,
)
from multiplayer.models import ActionKind, EndReason, MatchOutcome, RoomMode, RoomStatus, SessionStatus
from multiplayer.ratings import EloRatingUpdater, RatingUpdater
from multiplayer.realtime import RoomCallbacks
from multiplayer.session import MAX_CHAT_HISTORY, MAX_CHAT_LENGTH, SessionOrchestrator
from multiplayer.store import InMemoryRoomStore

from .helpers import COUNTER_GAME_ID, CounterState, settle


class FailingRatings(RatingUpdater):
    def __init__(self) -> None:
        self.calls = 0

    async def apply(self, outcome: MatchOutcome):
        self.calls += 1
        raise TransportError("ratings service down")


async def waiting_pair(store: InMemoryRoomStore, **alice_options) -> Tuple[SessionOrchestrator, SessionOrchestrator]:
    alice = SessionOrchestrator(store, "alice", **alice_options)
    bob = SessionOrchestrator(store, "bob", rating_updater=alice_options.get("rating_updater"))
    await alice.find_match(COUNTER_GAME_ID, RoomMode.RANKED)
    await bob.find_match(COUNTER_GAME_ID, RoomMode.RANKED)
    await settle()
    return alice, bob


async def playing_pair(store: InMemoryRoomStore, **alice_options) -> Tuple[SessionOrchestrator, SessionOrchestrator]:
    alice, bob = await waiting_pair(store, **alice_options)
    await alice.set_ready()
    await bob.set_ready()
    await settle()
    await alice.update_game_state(CounterState(value=1))
    await settle()
    return alice, bob


async def close(*sessions: SessionOrchestrator) -> None:
    for session in sessions:
        if session.client is not None:
            await session.client.disconnect()


def test_status_moves_to_playing_only_on_room_notification():
    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await waiting_pair(store)
        statuses = [alice.status]

        await alice.set_ready()
        await settle()
        statuses.append(alice.status)

        await bob.set_ready()
        statuses.append(alice.status)
        await settle()
        statuses.append(alice.status)
        statuses.append(bob.status)
        players = [player.user_id for player in alice.players]
        await close(alice, bob)
        return statuses, players

    statuses, players = asyncio.run(scenario())

    assert statuses == [
        SessionStatus.WAITING,
        SessionStatus.READY,
        SessionStatus.READY,
        SessionStatus.PLAYING,
        SessionStatus.PLAYING,
    ]
    assert players == ["alice", "bob"]


def test_entering_twice_is_a_conflict():
    async def scenario():
        store = InMemoryRoomStore()
        alice = SessionOrchestrator(store, "alice")
        await alice.find_match(COUNTER_GAME_ID)
        try:
            with pytest.raises(ConflictError, match="Already in a room"):
                await alice.create_private_room(COUNTER_GAME_ID)
        finally:
            await close(alice)

    asyncio.run(scenario())


def test_failed_join_returns_to_idle_with_message():
    async def scenario():
        store = InMemoryRoomStore()
        alice = SessionOrchestrator(store, "alice")
        with pytest.raises(RoomNotFound):
            await alice.join_by_code("NOPE22")
        return alice

    alice = asyncio.run(scenario())

    assert alice.status == SessionStatus.IDLE
    assert alice.error == "Room not found"
    assert alice.client is None


def test_turn_tracking_follows_the_replica():
    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store)
        before = (alice.is_my_turn, bob.is_my_turn)
        await alice.update_game_state(alice.state.payload.bump())
        await settle()
        after = (alice.is_my_turn, bob.is_my_turn, bob.state.version, bob.state.payload.value)
        await close(alice, bob)
        return before, after

    before, after = asyncio.run(scenario())

    assert before == (True, False)
    assert after == (False, True, 2, 2)


def test_stale_write_is_rejected():
    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store)
        await alice.update_game_state(CounterState(value=2, current_turn=2))
        try:
            with pytest.raises(StaleStateError):
                await bob.update_game_state(CounterState(value=99))
        finally:
            await close(alice, bob)
        return (await store.get_room(alice.room_id)).game_state

    stored = asyncio.run(scenario())
    assert stored.version == 2
    assert stored.payload.value == 2


def test_desynced_state_is_rejected_and_replica_kept():
    errors: List[BaseException] = []

    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store, callbacks=RoomCallbacks(on_error=errors.append))
        await bob.update_game_state(CounterState(value=-5))
        await settle()
        kept = (alice.state.version, alice.state.payload.value, alice.error)
        await close(alice, bob)
        return kept

    version, value, error = asyncio.run(scenario())

    assert (version, value) == (1, 1)
    assert error == GENERIC_TRANSPORT_MESSAGE
    assert len(errors) == 1
    assert isinstance(errors[0], StateDesyncError)


def test_custom_state_validator_runs_on_remote_states():
    def no_big_numbers(state: CounterState) -> None:
        if state.value > 10:
            raise StateDesyncError("Counter jumped")

    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store, state_validator=no_big_numbers)
        await bob.update_game_state(CounterState(value=50))
        await settle()
        value = alice.state.payload.value
        await close(alice, bob)
        return value

    assert asyncio.run(scenario()) == 1


def test_surrender_ends_game_for_both_sides():
    ends: List[Tuple[Optional[str], EndReason]] = []

    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store)
        bob.callbacks = RoomCallbacks(on_game_end=lambda winner, reason: ends.append((winner, reason)))
        await alice.surrender()
        await settle()
        room = await store.get_room(alice.room_id)
        actions = await store.list_actions(alice.room_id)
        result = (alice.status, bob.status, alice.winner_id, alice.end_reason, room, actions)
        await close(alice, bob)
        return result

    alice_status, bob_status, winner_id, reason, room, actions = asyncio.run(scenario())

    assert alice_status == SessionStatus.FINISHED
    assert bob_status == SessionStatus.FINISHED
    assert winner_id == "bob"
    assert reason == EndReason.SURRENDER
    assert ends == [("bob", EndReason.SURRENDER)]
    assert room.status == RoomStatus.FINISHED
    assert room.winner_id == "bob"
    assert room.game_state.payload.winner == 2
    assert actions[-1].kind == ActionKind.SURRENDER
    assert actions[-1].payload == {"player": 1}


def test_surrender_before_start_is_a_conflict():
    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await waiting_pair(store)
        try:
            with pytest.raises(ConflictError, match="not in progress"):
                await alice.surrender()
        finally:
            await close(alice, bob)

    asyncio.run(scenario())


def test_timeout_awards_the_other_seat():
    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store)
        await bob.record_timeout(1)
        await settle()
        result = (alice.winner_id, alice.end_reason, bob.end_reason)
        await close(alice, bob)
        return result

    assert asyncio.run(scenario()) == ("bob", EndReason.TIMEOUT, EndReason.TIMEOUT)


@pytest.mark.parametrize(
    "finish, reason",
    [
        (lambda alice, bob: alice.surrender(), EndReason.SURRENDER),
        (lambda alice, bob: bob.record_timeout(1), EndReason.TIMEOUT),
    ],
)
def test_end_reason_survives_a_game_with_no_state_written(finish, reason):
    ends: List[Tuple[Optional[str], EndReason]] = []

    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await waiting_pair(store)
        await alice.set_ready()
        await bob.set_ready()
        await settle()
        bob.callbacks = RoomCallbacks(on_game_end=lambda winner, why: ends.append((winner, why)))
        await finish(alice, bob)
        await settle()
        room = await store.get_room(alice.room_id)
        result = (alice.end_reason, bob.end_reason, room)
        await close(alice, bob)
        return result

    alice_reason, bob_reason, room = asyncio.run(scenario())

    assert room.game_state is None
    assert room.end_reason == reason
    assert (alice_reason, bob_reason) == (reason, reason)
    assert ends == [("bob", reason)]


def test_draw_offer_decline_then_accept():
    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store)

        await alice.offer_draw()
        with pytest.raises(ConflictError, match="already pending"):
            await alice.offer_draw()
        with pytest.raises(ConflictError, match="No draw offer to accept"):
            await alice.accept_draw()
        await settle()
        assert bob.draw_offered_by == "alice"

        await bob.decline_draw()
        await settle()
        assert alice.draw_offered_by is None
        with pytest.raises(ConflictError, match="No draw offer to decline"):
            await bob.decline_draw()

        await alice.offer_draw()
        await settle()
        await bob.accept_draw()
        await settle()
        room = await store.get_room(alice.room_id)
        result = (alice.status, alice.end_reason, alice.winner_id, room.winner_id)
        await close(alice, bob)
        return result

    status, reason, winner_id, room_winner = asyncio.run(scenario())

    assert status == SessionStatus.FINISHED
    assert reason == EndReason.DRAW
    assert winner_id is None
    assert room_winner is None


def test_chat_trims_truncates_and_ignores_blank_text():
    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store)
        blank = await alice.send_chat("   ")
        short = await alice.send_chat("  good luck  ")
        long = await alice.send_chat("x" * (MAX_CHAT_LENGTH + 50))
        emote = await alice.send_emote("gg")
        await settle()
        received = [(message.kind, message.content, message.own) for message in bob.chat]
        await close(alice, bob)
        return blank, short, long, emote, received

    blank, short, long, emote, received = asyncio.run(scenario())

    assert blank is None
    assert short.content == "good luck"
    assert len(long.content) == MAX_CHAT_LENGTH
    assert emote.kind == "emote"
    assert received == [
        ("text", "good luck", False),
        ("text", "x" * MAX_CHAT_LENGTH, False),
        ("emote", "gg", False),
    ]


def test_unknown_emote_is_rejected():
    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store)
        try:
            with pytest.raises(ValidationError, match="Unknown emote"):
                await alice.send_emote("shrug")
        finally:
            await close(alice, bob)

    asyncio.run(scenario())


def test_chat_history_is_capped():
    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store)
        for idx in range(MAX_CHAT_HISTORY + 5):
            await alice.send_chat(f"message {idx}")
        chat = list(alice.chat)
        await close(alice, bob)
        return chat

    chat = asyncio.run(scenario())
    assert len(chat) == MAX_CHAT_HISTORY
    assert chat[0].content == "message 5"


def test_rating_reported_once_by_the_finishing_client():
    ratings = EloRatingUpdater()

    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store, rating_updater=ratings)
        await alice.surrender()
        await settle()
        await close(alice, bob)

    asyncio.run(scenario())

    alice = ratings.record("alice", COUNTER_GAME_ID, RoomMode.RANKED)
    bob = ratings.record("bob", COUNTER_GAME_ID, RoomMode.RANKED)
    assert (alice.losses, alice.total_games, alice.rating) == (1, 1, 1184)
    assert (bob.wins, bob.total_games, bob.rating) == (1, 1, 1216)


def test_rating_failure_does_not_block_the_game_end():
    ratings = FailingRatings()

    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await playing_pair(store, rating_updater=ratings)
        await alice.surrender()
        await settle()
        result = (alice.status, alice.error)
        await close(alice, bob)
        return result

    status, error = asyncio.run(scenario())

    assert status == SessionStatus.FINISHED
    assert error is None
    assert ratings.calls == 1


def test_leave_and_cancel_reset_to_idle():
    async def scenario():
        store = InMemoryRoomStore()
        alice = SessionOrchestrator(store, "alice")
        first = await alice.find_match(COUNTER_GAME_ID)
        cancelled = await alice.cancel_search()
        after_cancel = alice.status

        second = await alice.find_match(COUNTER_GAME_ID)
        await alice.leave_room()
        return first, second, cancelled, after_cancel, alice, await store.get_room(second.room.id)

    first, second, cancelled, after_cancel, alice, room = asyncio.run(scenario())

    assert cancelled is True
    assert after_cancel == SessionStatus.IDLE
    assert second.room.id != first.room.id
    assert alice.status == SessionStatus.IDLE
    assert alice.client is None
    assert room.status == RoomStatus.CANCELLED


def test_cancel_after_opponent_joined_gives_the_seat_back():
    async def scenario():
        store = InMemoryRoomStore()
        alice, bob = await waiting_pair(store)
        room_id = alice.room_id
        cancelled = await alice.cancel_search()
        await settle()
        result = (cancelled, alice.status, await store.get_room(room_id), await store.list_players(room_id))
        await close(alice, bob)
        return result

    cancelled, status, room, players = asyncio.run(scenario())

    assert cancelled is False
    assert status == SessionStatus.IDLE
    assert room.status == RoomStatus.WAITING
    assert room.current_players == 1
    assert [player.user_id for player in players] == ["bob"]
