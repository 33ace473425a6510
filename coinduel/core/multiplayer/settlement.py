"""
Match settlement: wager transfer, statistics and experience.

Runs once per completed match, after the match has left the active
table. Each player is settled on their own; a storage failure for one is
logged and does not stop the other.
"""

import asyncio
import sqlite3
from dataclasses import dataclass, field
from typing import Dict, Optional

from coinduel.config import settings
from coinduel.core.exceptions import StorageError
from coinduel.core.logger import get_logger
from coinduel.core.multiplayer.match import Match, MatchStatus, Participant
from coinduel.core.progression import award_xp, get_level_info, get_rank_info

logger = get_logger("settlement")


@dataclass
class PlayerDelta:
    """What a finished match changes for one player."""

    identity: str
    opponent: str
    rounds_won: int
    rounds_lost: int
    coins: int = 0
    xp: int = 0
    won: bool = False
    lost: bool = False
    reason: str = ""

    def stats(self) -> Dict[str, int]:
        return {
            "total_coins": self.coins,
            "total_xp": self.xp,
            "multiplayer_matches_played": 1,
            "multiplayer_matches_won": 1 if self.won else 0,
            "multiplayer_matches_lost": 1 if self.lost else 0,
            "multiplayer_rounds_won": self.rounds_won,
            "multiplayer_rounds_lost": self.rounds_lost,
        }


@dataclass
class SettlementResult:
    identity: str
    connection_ref: str
    new_balance: int
    persisted: bool
    payload: Dict = field(default_factory=dict)


class Settlement:
    def __init__(self, store=None, rules=None):
        if store is None:
            from coinduel.core.database import db as store
        self.store = store
        self.rules = rules or settings.multiplayer

    def plan(self, match: Match) -> Dict[str, PlayerDelta]:
        """Compute both players' deltas. Pure; touches nothing."""
        if match.status != MatchStatus.COMPLETED:
            raise ValueError(f"Match {match.match_id} is not completed")

        deltas = {}
        for me in match.participants:
            them = match.other(me.identity)
            delta = PlayerDelta(
                identity=me.identity,
                opponent=them.identity,
                rounds_won=me.score,
                rounds_lost=them.score,
                xp=me.score * self.rules.xp_per_round_won,
            )
            reasons = [f"{me.score} round{'s' if me.score != 1 else ''} won"]

            if match.winner == me.identity:
                delta.won = True
                delta.coins = match.bet_amount
                delta.xp += self.rules.win_bonus_xp
                reasons.append("match victory")
            elif match.winner is not None:
                delta.lost = True
                delta.coins = -match.bet_amount

            delta.reason = "Multiplayer: " + " + ".join(reasons)
            deltas[me.identity] = delta
        return deltas

    async def settle(self, match: Match, cached_wallets: Dict[str, int] = None) -> Dict[str, SettlementResult]:
        """
        Persist the match outcome for both players.

        Args:
            match: A COMPLETED match already removed from the engine
            cached_wallets: Balances to report if a player's update cannot be stored

        Returns:
            SettlementResult per identity, each with its match_ended payload
        """
        cached_wallets = cached_wallets or {}
        deltas = self.plan(match)

        results = {}
        for participant in match.participants:
            results[participant.identity] = await self._settle_player(
                match, participant, deltas[participant.identity], cached_wallets.get(participant.identity, 0)
            )

        logger.info(
            f"Match settled: winner={match.winner}",
            extra={
                "match_id": match.match_id,
                "bet": match.bet_amount,
                "persisted": all(r.persisted for r in results.values()),
            },
        )
        return results

    async def _settle_player(
        self, match: Match, participant: Participant, delta: PlayerDelta, cached_wallet: int
    ) -> SettlementResult:
        xp_reward: Optional[Dict] = None
        level_info = rank_info = None
        persisted = False
        new_balance = cached_wallet

        try:
            user = await asyncio.to_thread(self.store.get_user, delta.identity)
            if user is None:
                raise StorageError(f"User not found: {delta.identity}")

            xp_reward = award_xp(dict(user), delta.xp, delta.reason)
            updated = await asyncio.to_thread(self.store.update_user_stats, delta.identity, delta.stats())
            persisted = True

            new_balance = updated["total_coins"]
            level_info = get_level_info(updated["total_xp"])
            rank_info = get_rank_info(level_info["level"])
        except (StorageError, sqlite3.Error) as e:
            logger.warning(
                f"Settlement for {delta.identity} was not persisted: {e}",
                extra={"match_id": match.match_id},
            )

        if persisted:
            await self._record_history(match, delta, new_balance, level_info["level"])

        payload = {
            "matchId": match.match_id,
            "winnerIdentity": match.winner,
            "forfeit": match.forfeited_by is not None,
            "finalScore": match.scores(),
            "roundsWon": delta.rounds_won,
            "roundsLost": delta.rounds_lost,
            "coinsWon": delta.coins,
            "newBalance": new_balance,
            "xpReward": xp_reward,
            "levelInfo": level_info,
            "rankInfo": rank_info,
            "persisted": persisted,
        }
        return SettlementResult(
            identity=delta.identity,
            connection_ref=participant.connection_ref,
            new_balance=new_balance,
            persisted=persisted,
            payload=payload,
        )

    async def _record_history(self, match: Match, delta: PlayerDelta, balance_after: int, level: int):
        entry = {
            "match_id": match.match_id,
            "opponent_username": delta.opponent,
            "bet_amount": match.bet_amount,
            "won": delta.won,
            "win_amount": delta.coins,
            "balance_after": balance_after,
            "xp_gained": delta.xp,
            "level_at_time": level,
            "rounds_won": delta.rounds_won,
            "rounds_lost": delta.rounds_lost,
        }
        try:
            await asyncio.to_thread(self.store.add_game_history, delta.identity, entry)
        except (StorageError, sqlite3.Error) as e:
            logger.warning(f"Could not record history for {delta.identity}: {e}", extra={"match_id": match.match_id})
