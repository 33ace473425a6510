"""
Matchmaking: the lobby, first-come quick matches and code-addressed
private rooms.

Operations return notifications instead of sending them, and return a
Pairing when two players should be put into a match. Starting the match
(immediately for quick matches, after a short grace period for rooms) is
the coordinator's job.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from coinduel.config import settings
from coinduel.core.exceptions import (
    InsufficientFunds,
    InvalidBetAmount,
    PlayerBusy,
    RoomCodeExhausted,
    RoomNotAvailable,
    RoomNotFound,
)
from coinduel.core.logger import get_logger
from coinduel.core.multiplayer.registry import ConnectionRegistry, OnlinePlayer, PlayerStatus
from coinduel.core.rng import rng
from coinduel.core.websocket import Notification

logger = get_logger("matchmaking")


class RoomStatus(str, Enum):
    WAITING = "waiting"
    READY = "ready"


@dataclass
class PrivateRoom:
    room_code: str
    host: OnlinePlayer
    rounds: int
    bet_amount: int
    guest: Optional[OnlinePlayer] = None
    status: RoomStatus = RoomStatus.WAITING
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class SearchRequest:
    player: OnlinePlayer
    rounds: int
    bet_amount: int


@dataclass
class Pairing:
    """Two players to be put into a match with these parameters."""

    player_a: OnlinePlayer
    player_b: OnlinePlayer
    rounds: int
    bet_amount: int


class MatchmakingService:
    def __init__(self, registry: ConnectionRegistry, rules=None, code_source=None):
        self.registry = registry
        self.rules = rules or settings.multiplayer
        self._code_source = code_source or rng.room_code
        self._queue: List[SearchRequest] = []
        self._rooms: Dict[str, PrivateRoom] = {}

    # ==================== Validation ====================

    def validate_bet(self, player: OnlinePlayer, rounds: int, bet_amount: int):
        """Check round count and stake against the rules and the player's cached wallet."""
        if not (self.rules.min_rounds <= rounds <= self.rules.max_rounds):
            raise InvalidBetAmount(
                f"Rounds must be between {self.rules.min_rounds} and {self.rules.max_rounds}"
            )
        if bet_amount <= 0 or not (self.rules.min_bet <= bet_amount <= self.rules.max_bet):
            raise InvalidBetAmount(
                f"Bet must be between {self.rules.min_bet} and {self.rules.max_bet}"
            )
        if bet_amount > player.cached_wallet:
            raise InsufficientFunds()

    @staticmethod
    def _require_idle(player: OnlinePlayer):
        if not player.is_idle:
            raise PlayerBusy()

    # ==================== Lobby ====================

    def lobby_roster(self) -> List[Dict]:
        return [p.summary() for p in self.registry.players_with_status(PlayerStatus.IN_LOBBY)]

    def join_lobby(self, player: OnlinePlayer) -> List[Notification]:
        self._require_idle(player)
        already_there = player.status == PlayerStatus.IN_LOBBY
        player.transition(PlayerStatus.IN_LOBBY)

        notifications = [Notification(player.connection_ref, "lobby_joined", {"players": self.lobby_roster()})]
        if not already_there:
            notifications.extend(
                Notification(other.connection_ref, "player_joined_lobby", {"username": player.identity})
                for other in self.registry.players_with_status(PlayerStatus.IN_LOBBY)
                if other is not player
            )
        return notifications

    # ==================== Quick match ====================

    def is_searching(self, player: OnlinePlayer) -> bool:
        return any(req.player is player for req in self._queue)

    def request_quick_match(
        self, player: OnlinePlayer, rounds: int, bet_amount: int
    ) -> Tuple[List[Notification], Optional[Pairing]]:
        """
        Pair with the longest-waiting searcher, or park this player.

        The waiting player's rounds and bet are used for the match.
        """
        self._require_idle(player)
        self.validate_bet(player, rounds, bet_amount)

        waiting = next((req for req in self._queue if req.player is not player), None)
        if waiting is not None:
            if waiting.bet_amount > player.cached_wallet:
                raise InsufficientFunds(
                    f"Your opponent is waiting with a {waiting.bet_amount} coin bet"
                )
            self._queue.remove(waiting)
            logger.info(f"Quick match paired: {waiting.player.identity} vs {player.identity}")
            return [], Pairing(waiting.player, player, waiting.rounds, waiting.bet_amount)

        player.transition(PlayerStatus.SEARCHING)
        self._queue.append(SearchRequest(player, rounds, bet_amount))
        logger.info(f"{player.identity} is searching", extra={"queue": len(self._queue)})
        return [Notification(player.connection_ref, "looking_for_match", {})], None

    def cancel_search(self, player: OnlinePlayer) -> List[Notification]:
        """Stop searching or leave the lobby. A no-op for anyone else."""
        if player.status not in (PlayerStatus.SEARCHING, PlayerStatus.IN_LOBBY):
            return []
        self._queue = [req for req in self._queue if req.player is not player]
        player.go_online()
        return [Notification(player.connection_ref, "search_cancelled", {})]

    # ==================== Private rooms ====================

    def _new_room_code(self) -> str:
        for _ in range(self.rules.room_code_attempts):
            code = self._code_source(self.rules.room_code_length)
            if code not in self._rooms:
                return code
            logger.debug(f"Room code collision on {code}, retrying")
        raise RoomCodeExhausted()

    def get_room(self, room_code: str) -> PrivateRoom:
        room = self._rooms.get(room_code)
        if room is None:
            raise RoomNotFound()
        return room

    def has_room(self, room_code: str) -> bool:
        return room_code in self._rooms

    def create_private_room(self, player: OnlinePlayer, rounds: int, bet_amount: int) -> List[Notification]:
        self._require_idle(player)
        self.validate_bet(player, rounds, bet_amount)

        code = self._new_room_code()
        self._rooms[code] = PrivateRoom(room_code=code, host=player, rounds=rounds, bet_amount=bet_amount)
        player.transition(PlayerStatus.HOSTING_ROOM)
        player.room_code = code

        logger.info(f"Room {code} created by {player.identity}", extra={"rounds": rounds, "bet": bet_amount})
        return [
            Notification(
                player.connection_ref,
                "room_created",
                {"roomCode": code, "rounds": rounds, "betAmount": bet_amount},
            )
        ]

    def join_private_room(self, player: OnlinePlayer, room_code: str) -> List[Notification]:
        room_code = (room_code or "").strip().upper()
        room = self.get_room(room_code)
        if room.status != RoomStatus.WAITING or room.host is player:
            raise RoomNotAvailable()
        self._require_idle(player)
        if room.bet_amount > player.cached_wallet:
            raise InsufficientFunds()

        room.guest = player
        room.status = RoomStatus.READY
        player.transition(PlayerStatus.IN_ROOM)
        player.room_code = room_code

        logger.info(f"{player.identity} joined room {room_code}")
        return [
            Notification(room.host.connection_ref, "player_joined_room", {"guestIdentity": player.identity}),
            Notification(
                player.connection_ref,
                "room_joined",
                {
                    "roomCode": room_code,
                    "hostIdentity": room.host.identity,
                    "rounds": room.rounds,
                    "betAmount": room.bet_amount,
                },
            ),
        ]

    def take_ready_room(self, room_code: str) -> Pairing:
        """Discard a READY room and hand back its players for match start."""
        room = self.get_room(room_code)
        if room.status != RoomStatus.READY or room.guest is None:
            raise RoomNotAvailable()
        del self._rooms[room_code]
        return Pairing(room.host, room.guest, room.rounds, room.bet_amount)

    def cancel_room(self, player: OnlinePlayer) -> List[Notification]:
        """Host closes a room nobody has joined yet."""
        if player.status != PlayerStatus.HOSTING_ROOM or player.room_code is None:
            return []
        room = self.get_room(player.room_code)
        if room.status != RoomStatus.WAITING:
            raise RoomNotAvailable("A guest has already joined")
        del self._rooms[room.room_code]
        player.go_online()
        logger.info(f"Room {room.room_code} cancelled by host")
        return [Notification(player.connection_ref, "room_cancelled", {"roomCode": room.room_code})]

    # ==================== Disconnect cascade ====================

    def drop_player(self, player: OnlinePlayer) -> Tuple[List[Notification], Optional[str]]:
        """
        Forget everything matchmaking holds for a departing player.

        Returns notifications for whoever is left behind and the code of
        any room that was deleted, so its pending start can be cancelled.
        """
        self._queue = [req for req in self._queue if req.player is not player]

        code = player.room_code
        room = self._rooms.get(code) if code else None
        if room is None or (room.host is not player and room.guest is not player):
            return [], None

        del self._rooms[code]
        notifications = []
        other = room.guest if player is room.host else room.host
        if other is not None:
            other.go_online()
            notifications.append(
                Notification(
                    other.connection_ref,
                    "error",
                    {"message": f"Room closed: {player.identity} left before the match started"},
                )
            )
        logger.info(f"Room {code} deleted after {player.identity} disconnected")
        return notifications, code
