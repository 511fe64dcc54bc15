import pytest

from multiplayer.errors import (
    GENERIC_TRANSPORT_MESSAGE,
    ConflictError,
    MultiplayerError,
    NotYourTurn,
    RoomFull,
    RoomNotFound,
    StaleStateError,
    StateDesyncError,
    TransportError,
    ValidationError,
    error_from_code,
    user_message,
)
from poker.cards import draw
from poker.models import MoveType

from .helpers import create_engine, start_hand


def test_check_when_facing_bet_raises_value_error():
    engine = create_engine()
    state = start_hand(engine, seed=101)

    with pytest.raises(ValueError, match="Cannot check"):
        engine.apply_move(state, 1, MoveType.CHECK)


def test_call_with_nothing_to_call_rejected():
    engine = create_engine()
    state = start_hand(engine, seed=202)
    state, _ = engine.apply_move(state, 1, MoveType.CALL)

    with pytest.raises(ValueError, match="Nothing to call"):
        engine.apply_move(state, 2, MoveType.CALL)


def test_apply_move_rejects_unknown_move():
    engine = create_engine()
    state = start_hand(engine)

    with pytest.raises(ValidationError, match="Unsupported action"):
        engine.apply_move(state, 1, "raise_to")  # type: ignore[arg-type]


def test_moves_after_showdown_rejected():
    engine = create_engine()
    state = start_hand(engine)
    state, _ = engine.apply_move(state, 1, MoveType.FOLD)

    with pytest.raises(ConflictError, match="Hand not active"):
        engine.apply_move(state, 2, MoveType.CHECK)


def test_invalid_seat_rejected():
    engine = create_engine()
    state = start_hand(engine)

    with pytest.raises(ValidationError, match="Invalid seat"):
        engine.apply_move(state, 3, MoveType.CHECK)


def test_draw_raises_when_deck_exhausted():
    deck = ["Ah", "Kd"]
    cards, index = draw(deck, 0, 2)
    assert cards == ["Ah", "Kd"]
    with pytest.raises(ValueError, match="Not enough cards"):
        draw(deck, index, 1)


def test_taxonomy_keeps_builtin_bases():
    assert issubclass(ValidationError, ValueError)
    assert issubclass(ConflictError, ValueError)
    assert issubclass(RoomNotFound, LookupError)
    assert issubclass(TransportError, RuntimeError)
    assert issubclass(NotYourTurn, ConflictError)
    assert issubclass(StaleStateError, ConflictError)
    assert NotYourTurn.code == "OUT_OF_TURN"


def test_error_from_code_rebuilds_the_same_class():
    exc = error_from_code("ROOM_FULL", "Room is full")
    assert isinstance(exc, RoomFull)
    assert exc.msg == "Room is full"
    assert isinstance(error_from_code("SOMETHING_NEW", "boom"), TransportError)


def test_user_message_hides_transport_details():
    assert user_message(RoomFull("Room is full")) == "Room is full"
    assert user_message(ValidationError("")) == "VALIDATION"
    assert user_message(TransportError("socket reset by peer")) == GENERIC_TRANSPORT_MESSAGE
    assert user_message(StateDesyncError("bad chips")) == GENERIC_TRANSPORT_MESSAGE
    assert user_message(MultiplayerError("odd")) == GENERIC_TRANSPORT_MESSAGE
