"""
Duel coordinator: the front door for every WebSocket event.

Inbound messages are dispatched to the registry, matchmaking service and
match engine, which change state synchronously and hand back the
notifications to send. Only this class awaits anything: delivery, the
user store, and the two cosmetic delays (room start and next round),
which run as cancellable tasks so a disconnect during the delay stops
the pending step instead of letting it fire against stale state.
"""

import asyncio
import sqlite3
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from coinduel.config import settings
from coinduel.core.exceptions import (
    CoinDuelError,
    InvalidPayload,
    MatchNotFound,
    PlayerNotFound,
    StorageError,
)
from coinduel.core.logger import get_logger
from coinduel.core.multiplayer.match import Match, MatchEngine
from coinduel.core.multiplayer.matchmaking import MatchmakingService, Pairing
from coinduel.core.multiplayer.registry import ConnectionRegistry, OnlinePlayer, PlayerStatus
from coinduel.core.multiplayer.settlement import Settlement
from coinduel.core.websocket import Notification, ws_manager

logger = get_logger("coordinator")


# ==================== Inbound payloads ====================

class MatchRequest(BaseModel):
    rounds: int = 3
    bet_amount: int = Field(alias="betAmount")


class JoinRoomRequest(BaseModel):
    room_code: str = Field(alias="roomCode", min_length=1, max_length=16)


class MoveRequest(BaseModel):
    match_id: str = Field(alias="matchId")
    prediction: str


def _parse(model, message: dict):
    try:
        return model.model_validate(message)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise InvalidPayload(f"Invalid {field or 'message'}: {first.get('msg')}")


class DuelCoordinator:
    def __init__(
        self,
        notifier=None,
        store=None,
        rules=None,
        coin_source: Callable[[], str] = None,
        code_source: Callable[[int], str] = None,
    ):
        if store is None:
            from coinduel.core.database import db as store
        self.notifier = notifier or ws_manager
        self.store = store
        self.rules = rules or settings.multiplayer
        self.registry = ConnectionRegistry()
        self.matchmaking = MatchmakingService(self.registry, self.rules, code_source)
        self.engine = MatchEngine(coin_source)
        self.settlement = Settlement(store, self.rules)
        self._timers: Dict[str, asyncio.Task] = {}
        # Coins won or lost in finished matches whose settlement is not yet stored
        self._unsettled_coins: Dict[str, int] = {}
        self._handlers = {
            "join_lobby": self._on_join_lobby,
            "quick_match": self._on_quick_match,
            "cancel_search": self._on_cancel_search,
            "create_private_room": self._on_create_room,
            "join_private_room": self._on_join_room,
            "cancel_room": self._on_cancel_room,
            "make_call": self._on_make_call,
            "make_prediction": self._on_make_prediction,
            "ping": self._on_ping,
        }

    # ==================== Connection lifecycle ====================

    async def attach(self, connection_ref: str, identity: str) -> OnlinePlayer:
        """Register a freshly authenticated connection and greet it."""
        stored_wallet = None
        try:
            user = await asyncio.to_thread(self.store.get_or_create_user, identity)
            stored_wallet = user["total_coins"]
        except (StorageError, sqlite3.Error) as e:
            logger.warning(f"Could not load wallet for {identity}: {e}")

        notifications: List[Notification] = []
        finished: Optional[Match] = None

        # One live record per user; the older connection is treated as gone
        existing = self.registry.find_by_identity(identity)
        if existing is not None:
            logger.info(f"{identity} reconnected, dropping connection {existing.connection_ref}")
            self.registry.remove(existing.connection_ref)
            notifications, finished = self._cascade(existing)
            notifications.append(
                Notification(existing.connection_ref, "error", {"message": "Signed in from another connection"})
            )

        # The store may not have caught up with matches that are still settling
        wallet = 0
        if stored_wallet is not None:
            wallet = stored_wallet + self._unsettled_coins.get(identity, 0)

        player = self.registry.register(connection_ref, identity, wallet)
        notifications.append(Notification(connection_ref, "connected", {"identity": identity, "wallet": wallet}))

        await self.notifier.deliver(notifications)
        if finished is not None:
            await self._settle(finished)
        return player

    async def detach(self, connection_ref: str):
        """Disconnect cascade: leave the queue, drop rooms, forfeit any match."""
        try:
            player = self.registry.remove(connection_ref)
        except PlayerNotFound:
            return
        notifications, finished = self._cascade(player)
        logger.info(f"{player.identity} detached", extra={"status": player.status.value})

        await self.notifier.deliver(notifications)
        if finished is not None:
            await self._settle(finished)

    def _cascade(self, player: OnlinePlayer):
        notifications, room_code = self.matchmaking.drop_player(player)
        if room_code:
            self._cancel_timer(f"room:{room_code}")

        finished = None
        if player.status == PlayerStatus.IN_MATCH and player.match_id in self.engine:
            finished = self._finish_match(player.match_id, forfeited_by=player.identity)
            remaining = finished.other(player.identity)
            if remaining.connection_ref in self.registry:
                notifications.append(Notification(remaining.connection_ref, "opponent_disconnected", {}))
        return notifications, finished

    # ==================== Event dispatch ====================

    async def handle(self, connection_ref: str, message: dict):
        """Process one inbound message. Rejections go back to the sender only."""
        try:
            if not isinstance(message, dict):
                raise InvalidPayload()
            player = self.registry.find(connection_ref)
            handler = self._handlers.get(message.get("type"))
            if handler is None:
                raise InvalidPayload(f"Unknown message type: {message.get('type')}")
            await handler(player, message)
        except CoinDuelError as e:
            logger.debug(f"Rejected {message.get('type') if isinstance(message, dict) else message}: {e.message}")
            await self.notifier.notify(connection_ref, "error", {"message": e.message})

    async def _on_ping(self, player: OnlinePlayer, message: dict):
        await self.notifier.notify(player.connection_ref, "pong", {})

    async def _on_join_lobby(self, player: OnlinePlayer, message: dict):
        await self.notifier.deliver(self.matchmaking.join_lobby(player))

    async def _on_quick_match(self, player: OnlinePlayer, message: dict):
        request = _parse(MatchRequest, message)
        notifications, pairing = self.matchmaking.request_quick_match(player, request.rounds, request.bet_amount)
        if pairing is not None:
            notifications += self._start_match(pairing)
        await self.notifier.deliver(notifications)

    async def _on_cancel_search(self, player: OnlinePlayer, message: dict):
        await self.notifier.deliver(self.matchmaking.cancel_search(player))

    async def _on_create_room(self, player: OnlinePlayer, message: dict):
        request = _parse(MatchRequest, message)
        await self.notifier.deliver(
            self.matchmaking.create_private_room(player, request.rounds, request.bet_amount)
        )

    async def _on_join_room(self, player: OnlinePlayer, message: dict):
        request = _parse(JoinRoomRequest, message)
        notifications = self.matchmaking.join_private_room(player, request.room_code)
        code = player.room_code
        self._schedule(f"room:{code}", self.rules.room_start_delay, lambda: self._start_room(code))
        await self.notifier.deliver(notifications)

    async def _on_cancel_room(self, player: OnlinePlayer, message: dict):
        await self.notifier.deliver(self.matchmaking.cancel_room(player))

    def _current_match(self, player: OnlinePlayer, request: MoveRequest) -> str:
        if player.status != PlayerStatus.IN_MATCH or player.match_id != request.match_id:
            raise MatchNotFound()
        return request.match_id

    async def _on_make_call(self, player: OnlinePlayer, message: dict):
        request = _parse(MoveRequest, message)
        match_id = self._current_match(player, request)
        await self.notifier.deliver(self.engine.submit_call(match_id, player.identity, request.prediction))

    async def _on_make_prediction(self, player: OnlinePlayer, message: dict):
        request = _parse(MoveRequest, message)
        match_id = self._current_match(player, request)
        outcome = self.engine.submit_prediction(match_id, player.identity, request.prediction)

        if outcome.finished:
            match = self._finish_match(match_id)
            await self.notifier.deliver(outcome.notifications)
            await self._settle(match)
        else:
            self._schedule(f"match:{match_id}", self.rules.round_delay, lambda: self._next_round(match_id))
            await self.notifier.deliver(outcome.notifications)

    # ==================== Match plumbing ====================

    def _start_match(self, pairing: Pairing) -> List[Notification]:
        _, notifications = self.engine.create_match(
            pairing.player_a, pairing.player_b, pairing.rounds, pairing.bet_amount
        )
        return notifications

    async def _start_room(self, room_code: str):
        pairing = self.matchmaking.take_ready_room(room_code)
        await self.notifier.deliver(self._start_match(pairing))

    async def _next_round(self, match_id: str):
        await self.notifier.deliver(self.engine.advance(match_id))

    def _finish_match(self, match_id: str, forfeited_by: str = None) -> Match:
        """
        Complete the match and put both players back online, before any await.

        Cached wallets move by the match result straight away so nobody can
        stake coins they have just lost while settlement is being stored.
        """
        self._cancel_timer(f"match:{match_id}")
        match = self.engine.finish(match_id, forfeited_by=forfeited_by)
        deltas = self.settlement.plan(match)
        for participant in match.participants:
            coins = deltas[participant.identity].coins
            self._unsettled_coins[participant.identity] = self._unsettled_coins.get(participant.identity, 0) + coins
            if participant.connection_ref not in self.registry:
                continue
            player = self.registry.find(participant.connection_ref)
            player.cached_wallet += coins
            if player.match_id == match.match_id:
                player.go_online()
        return match

    async def _settle(self, match: Match):
        deltas = self.settlement.plan(match)
        # Reported if a write fails: the wallet without this match's result
        fallback = {}
        for p in match.participants:
            player = self.registry.find_by_identity(p.identity)
            if player is not None:
                fallback[p.identity] = player.cached_wallet - deltas[p.identity].coins

        results = await self.settlement.settle(match, fallback)

        notifications = []
        for identity, result in results.items():
            coins = deltas[identity].coins
            pending = self._unsettled_coins.get(identity, 0) - coins
            if pending:
                self._unsettled_coins[identity] = pending
            else:
                self._unsettled_coins.pop(identity, None)

            # Look the player up again: they may have left or reconnected meanwhile
            player = self.registry.find_by_identity(identity)
            if player is None:
                continue
            if result.persisted:
                player.cached_wallet = result.new_balance + pending
            else:
                player.cached_wallet -= coins
            notifications.append(Notification(player.connection_ref, "match_ended", result.payload))
        await self.notifier.deliver(notifications)

    # ==================== Timers ====================

    def _schedule(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]):
        self._cancel_timer(key)
        self._timers[key] = asyncio.create_task(self._run_later(key, delay, callback))

    def _cancel_timer(self, key: str):
        task = self._timers.pop(key, None)
        if task is not None:
            task.cancel()

    async def _run_later(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]):
        if delay > 0:
            await asyncio.sleep(delay)
        # Past this point the step is an ordinary event and can no longer be cancelled
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        try:
            await callback()
        except CoinDuelError as e:
            logger.info(f"Scheduled step {key} skipped: {e.message}")
        except Exception as e:
            logger.error(f"Scheduled step {key} failed: {e}", exc_info=True)

    def pending_timers(self) -> List[str]:
        return list(self._timers)

    async def drain(self):
        """Wait until no delayed step is pending."""
        while self._timers:
            await asyncio.gather(*list(self._timers.values()), return_exceptions=True)

    def shutdown(self):
        for key in list(self._timers):
            self._cancel_timer(key)


# Global coordinator instance
coordinator = DuelCoordinator()
