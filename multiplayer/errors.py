from __future__ import annotations

from typing import Dict, Type

GENERIC_TRANSPORT_MESSAGE = "Connection issue, try again."


class MultiplayerError(Exception):
    code = "ERROR"

    def __init__(self, msg: str = "") -> None:
        super().__init__(msg)
        self.msg = msg


class ValidationError(MultiplayerError, ValueError):
    code = "VALIDATION"


class NotFoundError(MultiplayerError, LookupError):
    code = "NOT_FOUND"


class RoomNotFound(NotFoundError):
    code = "ROOM_NOT_FOUND"


class ConflictError(MultiplayerError, ValueError):
    code = "CONFLICT"


class RoomFull(ConflictError):
    code = "ROOM_FULL"


class RoomNotJoinable(ConflictError):
    code = "ROOM_NOT_JOINABLE"


class NotYourTurn(ConflictError):
    code = "OUT_OF_TURN"


class StaleStateError(ConflictError):
    code = "STALE_STATE"


class TransportError(MultiplayerError, RuntimeError):
    code = "TRANSPORT"


class StateDesyncError(MultiplayerError):
    code = "STATE_DESYNC"


ERRORS_BY_CODE: Dict[str, Type[MultiplayerError]] = {
    cls.code: cls
    for cls in (
        MultiplayerError,
        ValidationError,
        NotFoundError,
        RoomNotFound,
        ConflictError,
        RoomFull,
        RoomNotJoinable,
        NotYourTurn,
        StaleStateError,
        TransportError,
        StateDesyncError,
    )
}


def error_from_code(code: str, msg: str) -> MultiplayerError:
    """Rebuild a taxonomy exception from its wire code (unknown codes become transport errors)."""
    cls = ERRORS_BY_CODE.get(code, TransportError)
    return cls(msg)


def user_message(exc: BaseException) -> str:
    """Text shown inline to the player for a failed operation."""
    if isinstance(exc, TransportError):
        return GENERIC_TRANSPORT_MESSAGE
    if isinstance(exc, (ValidationError, ConflictError, NotFoundError)):
        return exc.msg or exc.code
    return GENERIC_TRANSPORT_MESSAGE
