"""
Connection registry: one OnlinePlayer per attached connection.

Pure bookkeeping. Nothing here talks to storage or the network; callers
decide who to notify.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from coinduel.core.exceptions import DuplicateConnection, IllegalTransition, PlayerNotFound


class PlayerStatus(str, Enum):
    ONLINE = "online"
    IN_LOBBY = "in_lobby"
    SEARCHING = "searching"
    HOSTING_ROOM = "hosting_room"
    IN_ROOM = "in_room"
    IN_MATCH = "in_match"


# Statuses from which a player may start matchmaking
IDLE_STATUSES = frozenset({PlayerStatus.ONLINE, PlayerStatus.IN_LOBBY})

_TRANSITIONS = {
    PlayerStatus.ONLINE: {
        PlayerStatus.IN_LOBBY,
        PlayerStatus.SEARCHING,
        PlayerStatus.HOSTING_ROOM,
        PlayerStatus.IN_ROOM,
        PlayerStatus.IN_MATCH,
    },
    PlayerStatus.IN_LOBBY: {
        PlayerStatus.ONLINE,
        PlayerStatus.SEARCHING,
        PlayerStatus.HOSTING_ROOM,
        PlayerStatus.IN_ROOM,
        PlayerStatus.IN_MATCH,
    },
    PlayerStatus.SEARCHING: {PlayerStatus.ONLINE, PlayerStatus.IN_MATCH},
    PlayerStatus.HOSTING_ROOM: {PlayerStatus.ONLINE, PlayerStatus.IN_MATCH},
    PlayerStatus.IN_ROOM: {PlayerStatus.ONLINE, PlayerStatus.IN_MATCH},
    PlayerStatus.IN_MATCH: {PlayerStatus.ONLINE},
}


def can_transition(current: PlayerStatus, target: PlayerStatus) -> bool:
    return target == current or target in _TRANSITIONS[current]


@dataclass
class OnlinePlayer:
    identity: str
    connection_ref: str
    cached_wallet: int = 0
    status: PlayerStatus = PlayerStatus.ONLINE
    match_id: Optional[str] = None
    room_code: Optional[str] = None

    def transition(self, target: PlayerStatus):
        if not can_transition(self.status, target):
            raise IllegalTransition("player status", self.status.value, target.value)
        self.status = target

    def go_online(self):
        """Return to plain ONLINE, dropping any room or match reference."""
        self.transition(PlayerStatus.ONLINE)
        self.match_id = None
        self.room_code = None

    @property
    def is_idle(self) -> bool:
        return self.status in IDLE_STATUSES

    def summary(self) -> Dict:
        return {"username": self.identity, "status": self.status.value}


class ConnectionRegistry:
    """Owns every OnlinePlayer. Insertion order is registration order."""

    def __init__(self):
        self._players: Dict[str, OnlinePlayer] = {}

    def register(self, connection_ref: str, identity: str, initial_wallet: int = 0) -> OnlinePlayer:
        if connection_ref in self._players:
            raise DuplicateConnection(connection_ref)
        player = OnlinePlayer(
            identity=identity,
            connection_ref=connection_ref,
            cached_wallet=int(initial_wallet or 0),
        )
        self._players[connection_ref] = player
        return player

    def find(self, connection_ref: str) -> OnlinePlayer:
        player = self._players.get(connection_ref)
        if player is None:
            raise PlayerNotFound()
        return player

    def find_by_identity(self, identity: str) -> Optional[OnlinePlayer]:
        for player in self._players.values():
            if player.identity == identity:
                return player
        return None

    def remove(self, connection_ref: str) -> OnlinePlayer:
        """Remove and return the record so the caller can cascade cleanup."""
        player = self._players.pop(connection_ref, None)
        if player is None:
            raise PlayerNotFound()
        return player

    def players_with_status(self, status: PlayerStatus) -> List[OnlinePlayer]:
        return [p for p in self._players.values() if p.status == status]

    def __contains__(self, connection_ref: str) -> bool:
        return connection_ref in self._players

    def __len__(self) -> int:
        return len(self._players)
