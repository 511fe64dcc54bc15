from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import ConflictError, RoomFull, RoomNotFound, RoomNotJoinable, ValidationError
from .models import Room, RoomMode, RoomPlayer, RoomStatus
from .store import RoomStore

LOGGER = logging.getLogger("matchmaking")

# No 0/O or 1/I/L so codes survive being read aloud.
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
MATCHMADE_MODES = (RoomMode.RANKED, RoomMode.CASUAL)


@dataclass
class MatchmakingConfig:
    max_players: int = 2
    code_length: int = 6
    code_alphabet: str = CODE_ALPHABET
    code_attempts: int = 10


@dataclass
class JoinResult:
    room: Room
    players: List[RoomPlayer] = field(default_factory=list)
    player_number: int = 1
    is_new_room: bool = False


class MatchmakingService:
    """Pairs one user with a room. The store's seat claim decides every race."""

    def __init__(
        self,
        store: RoomStore,
        user_id: str,
        config: Optional[MatchmakingConfig] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not user_id:
            raise ValidationError("userId is required")
        self.store = store
        self.user_id = user_id
        self.config = config or MatchmakingConfig()
        self.rng = rng or random.SystemRandom()
        self.pending_room_id: Optional[str] = None

    async def find_match(self, game_id: str, mode: RoomMode = RoomMode.CASUAL) -> JoinResult:
        mode = self._parse_mode(mode)
        if mode not in MATCHMADE_MODES:
            raise ValidationError(f"Matchmaking supports ranked or casual, not {mode.value}")

        candidates = await self.store.list_rooms(game_id=game_id, mode=mode, status=RoomStatus.WAITING)
        for room in candidates:
            if room.is_private or not room.has_free_seat:
                continue
            try:
                player = await self.store.add_player(room.id, self.user_id)
            except (RoomFull, RoomNotJoinable, RoomNotFound):
                # Someone else took the seat between the scan and the claim.
                LOGGER.debug("Lost seat race for room %s", room.id)
                continue
            LOGGER.info("User %s matched into room %s as player %s", self.user_id, room.id, player.player_number)
            return await self._result(room.id, player, is_new_room=False)

        room = await self.store.create_room(
            game_id, mode, created_by=self.user_id, max_players=self.config.max_players
        )
        player = await self.store.add_player(room.id, self.user_id)
        LOGGER.info("User %s opened room %s for %s", self.user_id, room.id, game_id)
        return await self._result(room.id, player, is_new_room=True)

    async def create_private_room(self, game_id: str, mode: RoomMode = RoomMode.CASUAL) -> JoinResult:
        mode = self._parse_mode(mode)
        room: Optional[Room] = None
        for _ in range(self.config.code_attempts):
            code = self.generate_code()
            if await self.store.find_room_by_code(code) is not None:
                continue
            try:
                room = await self.store.create_room(
                    game_id,
                    mode,
                    created_by=self.user_id,
                    room_code=code,
                    max_players=self.config.max_players,
                )
            except ConflictError:
                continue
            break
        if room is None:
            raise ConflictError("Could not allocate a unique room code")

        player = await self.store.add_player(room.id, self.user_id)
        LOGGER.info("User %s created private room %s with code %s", self.user_id, room.id, room.room_code)
        return await self._result(room.id, player, is_new_room=True)

    async def join_by_code(self, code: str) -> JoinResult:
        if not isinstance(code, str) or not code.strip():
            raise ValidationError("roomCode is required")
        room = await self.store.find_room_by_code(code.strip().upper())
        if room is None:
            raise RoomNotFound("Room not found")

        players = await self.store.list_players(room.id)
        for player in players:
            if player.user_id == self.user_id:
                return await self._result(room.id, player, is_new_room=False)
        if room.status != RoomStatus.WAITING:
            raise RoomNotJoinable("Room is no longer accepting players")
        if not room.has_free_seat:
            raise RoomFull("Room is full")

        player = await self.store.add_player(room.id, self.user_id)
        LOGGER.info("User %s joined room %s by code", self.user_id, room.id)
        return await self._result(room.id, player, is_new_room=False)

    async def cancel_search(self) -> bool:
        """Abandon the pending room if nobody else has joined it yet."""
        room_id = self.pending_room_id
        self.pending_room_id = None
        if room_id is None:
            return False
        try:
            cancelled = await self.store.abandon_room(room_id, self.user_id)
        except RoomNotFound:
            return False
        if cancelled:
            LOGGER.info("User %s cancelled search, room %s closed", self.user_id, room_id)
        return cancelled

    async def leave_room(self, room_id: str) -> None:
        if self.pending_room_id == room_id:
            self.pending_room_id = None
        room = await self.store.get_room(room_id)
        players = await self.store.list_players(room_id)
        if not any(player.user_id == self.user_id for player in players):
            return
        if room.status == RoomStatus.WAITING:
            if not await self.store.abandon_room(room_id, self.user_id):
                await self.store.remove_player(room_id, self.user_id)
        elif room.status == RoomStatus.PLAYING:
            await self.store.update_player(room_id, self.user_id, disconnected=True)
        LOGGER.info("User %s left room %s", self.user_id, room_id)

    def generate_code(self) -> str:
        return "".join(self.rng.choice(self.config.code_alphabet) for _ in range(self.config.code_length))

    async def _result(self, room_id: str, player: RoomPlayer, *, is_new_room: bool) -> JoinResult:
        room = await self.store.get_room(room_id)
        players = await self.store.list_players(room_id)
        if room.status == RoomStatus.WAITING:
            self.pending_room_id = room_id
        return JoinResult(room=room, players=players, player_number=player.player_number, is_new_room=is_new_room)

    @staticmethod
    def _parse_mode(mode: RoomMode) -> RoomMode:
        try:
            return RoomMode(mode)
        except ValueError as exc:
            raise ValidationError(f"Invalid mode: {mode}") from exc
