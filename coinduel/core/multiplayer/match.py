"""
Match state machine.

A match is a fixed-length series of rounds between two players. In each
round one player calls a side, the other predicts after seeing the call,
and the coin decides. The caller alternates: player1 on odd rounds,
player2 on even rounds. The first player to a majority of rounds wins;
if the rounds run out first, the higher score wins and equal scores draw.

Every method here is synchronous and completes its state change before
returning, so the coordinator can await delivery or storage afterwards
without another event ever seeing a half-applied transition.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from coinduel.core.exceptions import (
    AlreadyCalled,
    AlreadyPredicted,
    CallNotMadeYet,
    CallerCannotPredict,
    IllegalTransition,
    InvalidPayload,
    MatchNotFound,
    NotYourTurn,
)
from coinduel.core.logger import get_logger
from coinduel.core.multiplayer.registry import OnlinePlayer, PlayerStatus
from coinduel.core.rng import rng
from coinduel.core.websocket import Notification

logger = get_logger("match")


class Prediction(str, Enum):
    HEADS = "heads"
    TAILS = "tails"

    @classmethod
    def parse(cls, value) -> "Prediction":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidPayload(f"Invalid prediction: {value}. Must be 'heads' or 'tails'.")


class RoundStatus(str, Enum):
    WAITING_CALL = "waiting_call"
    WAITING_OPPONENT = "waiting_opponent"
    COMPLETED = "completed"


class MatchStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


def round_winner(
    caller: str,
    opponent: str,
    caller_prediction: Prediction,
    opponent_prediction: Prediction,
    coin: Prediction,
) -> Optional[str]:
    """Caller wins on a correct call, otherwise the opponent on a correct prediction."""
    if caller_prediction == coin:
        return caller
    if opponent_prediction == coin:
        return opponent
    return None


@dataclass
class Round:
    index: int
    caller: str
    opponent: str
    caller_prediction: Optional[Prediction] = None
    opponent_prediction: Optional[Prediction] = None
    coin_result: Optional[Prediction] = None
    winner: Optional[str] = None
    status: RoundStatus = RoundStatus.WAITING_CALL

    def record_call(self, identity: str, prediction: Prediction):
        if identity != self.caller:
            raise NotYourTurn()
        if self.caller_prediction is not None:
            raise AlreadyCalled()
        self.caller_prediction = prediction
        self.status = RoundStatus.WAITING_OPPONENT

    def check_prediction(self, identity: str):
        """Raise if identity may not predict this round now."""
        if identity == self.caller:
            raise CallerCannotPredict()
        if identity != self.opponent:
            raise NotYourTurn("You are not playing this round")
        if self.caller_prediction is None:
            raise CallNotMadeYet()
        if self.opponent_prediction is not None:
            raise AlreadyPredicted()

    def record_prediction(self, identity: str, prediction: Prediction):
        self.check_prediction(identity)
        self.opponent_prediction = prediction

    def resolve(self, coin: Prediction) -> Optional[str]:
        if self.status != RoundStatus.WAITING_OPPONENT or self.opponent_prediction is None:
            raise IllegalTransition("round", self.status.value, RoundStatus.COMPLETED.value)
        self.coin_result = coin
        self.winner = round_winner(
            self.caller, self.opponent, self.caller_prediction, self.opponent_prediction, coin
        )
        self.status = RoundStatus.COMPLETED
        return self.winner

    def to_dict(self) -> Dict:
        return {
            "round": self.index,
            "caller": self.caller,
            "status": self.status.value,
            "callerPrediction": self.caller_prediction.value if self.caller_prediction else None,
            "opponentPrediction": self.opponent_prediction.value if self.opponent_prediction else None,
            "coinResult": self.coin_result.value if self.coin_result else None,
            "winner": self.winner,
        }


@dataclass
class Participant:
    identity: str
    connection_ref: str
    score: int = 0


@dataclass
class Match:
    match_id: str
    player1: Participant
    player2: Participant
    total_rounds: int
    bet_amount: int
    rounds: List[Round] = field(default_factory=list)
    current_round_index: int = 1
    status: MatchStatus = MatchStatus.ACTIVE
    winner: Optional[str] = None
    forfeited_by: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def __post_init__(self):
        if not self.rounds:
            self.rounds = [
                Round(
                    index=i,
                    caller=self.player1.identity if i % 2 == 1 else self.player2.identity,
                    opponent=self.player2.identity if i % 2 == 1 else self.player1.identity,
                )
                for i in range(1, self.total_rounds + 1)
            ]

    @property
    def current_round(self) -> Round:
        return self.rounds[self.current_round_index - 1]

    @property
    def majority(self) -> int:
        return math.ceil(self.total_rounds / 2)

    @property
    def participants(self) -> Tuple[Participant, Participant]:
        return self.player1, self.player2

    def participant(self, identity: str) -> Participant:
        for p in self.participants:
            if p.identity == identity:
                return p
        raise MatchNotFound("You are not in this match")

    def other(self, identity: str) -> Participant:
        return self.player2 if self.player1.identity == identity else self.player1

    def scores(self) -> Dict[str, int]:
        return {p.identity: p.score for p in self.participants}

    def is_over(self) -> bool:
        """Majority reached, or the last round has been resolved."""
        if max(self.player1.score, self.player2.score) >= self.majority:
            return True
        return (
            self.current_round_index == self.total_rounds
            and self.current_round.status == RoundStatus.COMPLETED
        )

    def leader(self) -> Optional[str]:
        if self.player1.score > self.player2.score:
            return self.player1.identity
        if self.player2.score > self.player1.score:
            return self.player2.identity
        return None


@dataclass
class RoundOutcome:
    notifications: List[Notification]
    finished: bool


class MatchEngine:
    """Owns every active match."""

    def __init__(self, coin_source: Callable[[], str] = None):
        self._matches: Dict[str, Match] = {}
        self._coin_source = coin_source or rng.flip_coin

    # ==================== Lookup ====================

    def get(self, match_id: str) -> Match:
        match = self._matches.get(match_id)
        if match is None:
            raise MatchNotFound()
        return match

    def get_for_player(self, match_id: str, identity: str) -> Match:
        match = self.get(match_id)
        match.participant(identity)
        return match

    def active_count(self) -> int:
        return len(self._matches)

    def __contains__(self, match_id: str) -> bool:
        return match_id in self._matches

    # ==================== Lifecycle ====================

    def create_match(
        self, player_a: OnlinePlayer, player_b: OnlinePlayer, rounds: int, bet_amount: int
    ) -> Tuple[Match, List[Notification]]:
        match = Match(
            match_id=uuid.uuid4().hex,
            player1=Participant(player_a.identity, player_a.connection_ref),
            player2=Participant(player_b.identity, player_b.connection_ref),
            total_rounds=rounds,
            bet_amount=bet_amount,
        )

        for player in (player_a, player_b):
            player.transition(PlayerStatus.IN_MATCH)
            player.match_id = match.match_id
            player.room_code = None

        self._matches[match.match_id] = match
        logger.info(
            f"Match started: {match.player1.identity} vs {match.player2.identity}",
            extra={"match_id": match.match_id, "rounds": rounds, "bet": bet_amount},
        )

        plan = [r.to_dict() for r in match.rounds]
        caller = match.current_round.caller
        notifications = [
            Notification(
                me.connection_ref,
                "match_started",
                {
                    "matchId": match.match_id,
                    "opponentIdentity": them.identity,
                    "totalRounds": match.total_rounds,
                    "betAmount": match.bet_amount,
                    "rounds": plan,
                    "currentRound": match.current_round_index,
                    "yourTurn": caller == me.identity,
                },
            )
            for me, them in ((match.player1, match.player2), (match.player2, match.player1))
        ]
        return match, notifications

    def submit_call(self, match_id: str, identity: str, prediction) -> List[Notification]:
        match = self.get_for_player(match_id, identity)
        prediction = Prediction.parse(prediction)
        current = match.current_round
        current.record_call(identity, prediction)

        caller = match.participant(identity)
        opponent = match.other(identity)
        logger.debug(
            f"{identity} called {prediction.value}",
            extra={"match_id": match_id, "round": current.index},
        )
        return [
            Notification(caller.connection_ref, "call_confirmed", {"round": current.index, "prediction": prediction.value}),
            Notification(opponent.connection_ref, "opponent_called", {"round": current.index, "prediction": prediction.value}),
        ]

    def submit_prediction(self, match_id: str, identity: str, prediction) -> RoundOutcome:
        match = self.get_for_player(match_id, identity)
        prediction = Prediction.parse(prediction)
        current = match.current_round
        current.check_prediction(identity)
        # Draw before recording so a bad coin leaves the round as it was
        coin = Prediction.parse(self._coin_source())
        current.record_prediction(identity, prediction)
        notifications = self.resolve_round(match, coin)
        return RoundOutcome(notifications=notifications, finished=match.is_over())

    def resolve_round(self, match: Match, coin: Prediction = None) -> List[Notification]:
        current = match.current_round
        if coin is None:
            coin = Prediction.parse(self._coin_source())
        winner = current.resolve(coin)
        if winner is not None:
            match.participant(winner).score += 1

        logger.info(
            f"Round {current.index} resolved: coin={coin.value} winner={winner}",
            extra={"match_id": match.match_id},
        )

        payload = {
            "round": current.index,
            "caller": current.caller,
            "coinResult": coin.value,
            "callerPrediction": current.caller_prediction.value,
            "opponentPrediction": current.opponent_prediction.value,
            "winnerIdentity": winner,
            "scoreA": match.player1.score,
            "scoreB": match.player2.score,
            "scores": match.scores(),
            "matchOver": match.is_over(),
        }
        return [Notification(p.connection_ref, "round_result", payload) for p in match.participants]

    def advance(self, match_id: str) -> List[Notification]:
        """Move to the next round and announce it."""
        match = self.get(match_id)
        if match.current_round.status != RoundStatus.COMPLETED or match.is_over():
            raise IllegalTransition("match round", match.current_round_index, match.current_round_index + 1)
        match.current_round_index += 1
        caller = match.current_round.caller
        return [
            Notification(
                p.connection_ref,
                "next_round",
                {"round": match.current_round_index, "caller": caller, "yourTurn": caller == p.identity},
            )
            for p in match.participants
        ]

    def finish(self, match_id: str, forfeited_by: str = None) -> Match:
        """
        Complete a match and take it out of the active table.

        With forfeited_by set, the other participant wins regardless of score.
        """
        match = self._matches.pop(match_id, None)
        if match is None:
            raise MatchNotFound()

        match.status = MatchStatus.COMPLETED
        if forfeited_by is not None:
            match.forfeited_by = forfeited_by
            match.winner = match.other(forfeited_by).identity
        else:
            match.winner = match.leader()

        logger.info(
            f"Match completed: winner={match.winner} score={match.player1.score}-{match.player2.score}",
            extra={"match_id": match_id, "forfeit": forfeited_by is not None},
        )
        return match
