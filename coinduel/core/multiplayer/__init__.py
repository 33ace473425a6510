"""Real-time multiplayer duel: registry, matchmaking, match engine and settlement."""

from .registry import ConnectionRegistry, OnlinePlayer, PlayerStatus
from .matchmaking import MatchmakingService, PrivateRoom, RoomStatus, Pairing
from .match import Match, MatchEngine, MatchStatus, Prediction, Round, RoundStatus, round_winner
from .settlement import Settlement, SettlementResult

__all__ = [
    "ConnectionRegistry",
    "OnlinePlayer",
    "PlayerStatus",
    "MatchmakingService",
    "PrivateRoom",
    "RoomStatus",
    "Pairing",
    "Match",
    "MatchEngine",
    "MatchStatus",
    "Prediction",
    "Round",
    "RoundStatus",
    "round_winner",
    "Settlement",
    "SettlementResult",
]
