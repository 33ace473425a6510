import asyncio

import pytest

from coinduel.config import MultiplayerConfig
from coinduel.core.multiplayer.coordinator import DuelCoordinator
from coinduel.core.multiplayer.registry import PlayerStatus

QUICK = {"type": "quick_match", "rounds": 3, "betAmount": 10}


async def connect_pair(duel):
    await duel.attach("c-alice", "alice")
    await duel.attach("c-bob", "bob")


async def start_quick_match(duel, notifier):
    await connect_pair(duel)
    await duel.handle("c-alice", QUICK)
    await duel.handle("c-bob", QUICK)
    return notifier.last("c-alice", "match_started")["matchId"]


def move(kind, match_id, prediction):
    return {"type": kind, "matchId": match_id, "prediction": prediction}


async def yield_until(condition, attempts=100):
    """Let other tasks run until condition() holds."""
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def test_attach_greets_with_wallet(duel, notifier):
    await duel.attach("c-alice", "alice")

    assert notifier.last("c-alice", "connected") == {"identity": "alice", "wallet": 100}
    assert duel.registry.find("c-alice").status == PlayerStatus.ONLINE


async def test_attach_creates_unknown_user(duel, notifier, store):
    await duel.attach("c-zed", "zed")

    assert "zed" in store.users
    assert notifier.last("c-zed", "connected")["wallet"] == 100


async def test_ping(duel, notifier):
    await duel.attach("c-alice", "alice")
    await duel.handle("c-alice", {"type": "ping"})
    assert notifier.events("c-alice")[-1] == "pong"


async def test_full_quick_match(duel, notifier, store, coin, rules):
    match_id = await start_quick_match(duel, notifier)
    assert notifier.last("c-bob", "match_started")["matchId"] == match_id

    # Round 1: alice calls heads and the coin agrees
    coin.queue("heads", "tails")
    await duel.handle("c-alice", move("make_call", match_id, "heads"))
    assert notifier.last("c-bob", "opponent_called") == {"round": 1, "prediction": "heads"}
    await duel.handle("c-bob", move("make_prediction", match_id, "tails"))
    assert notifier.last("c-bob", "round_result")["winnerIdentity"] == "alice"

    await duel.drain()
    assert notifier.last("c-bob", "next_round") == {"round": 2, "caller": "bob", "yourTurn": True}

    # Round 2: bob calls heads, alice predicts tails, coin tails
    await duel.handle("c-bob", move("make_call", match_id, "heads"))
    await duel.handle("c-alice", move("make_prediction", match_id, "tails"))
    await duel.drain()

    ended = notifier.last("c-alice", "match_ended")
    assert ended["winnerIdentity"] == "alice"
    assert ended["finalScore"] == {"alice": 2, "bob": 0}
    assert ended["newBalance"] == 110
    assert notifier.last("c-bob", "match_ended")["newBalance"] == 90
    assert store.users["alice"]["total_coins"] + store.users["bob"]["total_coins"] == 200

    # Match is gone and nobody advances to round 3
    assert duel.engine.active_count() == 0
    assert notifier.events("c-alice").count("next_round") == 1
    alice = duel.registry.find("c-alice")
    assert alice.status == PlayerStatus.ONLINE
    assert alice.match_id is None
    assert alice.cached_wallet == 110


async def test_round_result_precedes_match_ended(duel, notifier, coin):
    match_id = await start_quick_match(duel, notifier)
    duel.engine.get(match_id).player1.score = 1

    coin.queue("heads")
    await duel.handle("c-alice", move("make_call", match_id, "heads"))
    await duel.handle("c-bob", move("make_prediction", match_id, "tails"))

    events = notifier.events("c-bob")
    assert events.index("round_result") < events.index("match_ended")
    assert duel.pending_timers() == []


async def test_disconnect_mid_round_forfeits(duel, notifier, store, rules):
    match_id = await start_quick_match(duel, notifier)
    await duel.handle("c-alice", move("make_call", match_id, "heads"))
    notifier.clear()

    await duel.detach("c-bob")

    assert notifier.events("c-alice") == ["opponent_disconnected", "match_ended"]
    ended = notifier.last("c-alice", "match_ended")
    assert ended["winnerIdentity"] == "alice"
    assert ended["forfeit"] is True
    assert ended["coinsWon"] == 10
    assert ended["xpReward"]["xpGained"] == rules.win_bonus_xp
    assert notifier.events("c-bob") == []
    assert store.users["bob"]["total_coins"] == 90
    assert duel.registry.find("c-alice").status == PlayerStatus.ONLINE
    assert "c-bob" not in duel.registry


async def test_disconnect_while_searching(duel, notifier):
    await connect_pair(duel)
    await duel.handle("c-alice", QUICK)
    await duel.detach("c-alice")

    # bob is now first in line rather than paired with a ghost
    await duel.handle("c-bob", QUICK)
    assert notifier.events("c-bob")[-1] == "looking_for_match"


async def test_detach_unknown_connection_is_noop(duel, notifier):
    await duel.detach("c-nobody")
    assert notifier.sent == []


async def test_private_room_starts_after_delay(duel, notifier):
    await connect_pair(duel)
    await duel.handle("c-alice", {"type": "create_private_room", "rounds": 5, "betAmount": 20})
    code = notifier.last("c-alice", "room_created")["roomCode"]

    await duel.handle("c-bob", {"type": "join_private_room", "roomCode": code.lower()})
    assert notifier.last("c-alice", "player_joined_room") == {"guestIdentity": "bob"}
    assert notifier.last("c-bob", "room_joined")["hostIdentity"] == "alice"

    await duel.drain()
    started = notifier.last("c-bob", "match_started")
    assert started["totalRounds"] == 5
    assert started["betAmount"] == 20
    assert not duel.matchmaking.has_room(code)


async def test_disconnect_during_room_delay_cancels_start(notifier, store, coin):
    slow = DuelCoordinator(
        notifier=notifier,
        store=store,
        rules=MultiplayerConfig(room_start_delay=60, round_delay=0),
        coin_source=coin,
    )
    try:
        await connect_pair(slow)
        await slow.handle("c-alice", {"type": "create_private_room", "rounds": 3, "betAmount": 10})
        code = notifier.last("c-alice", "room_created")["roomCode"]
        await slow.handle("c-bob", {"type": "join_private_room", "roomCode": code})
        assert slow.pending_timers() == [f"room:{code}"]

        await slow.detach("c-bob")

        assert slow.pending_timers() == []
        assert not slow.matchmaking.has_room(code)
        assert notifier.last("c-alice", "error")["message"].startswith("Room closed")
        assert slow.registry.find("c-alice").status == PlayerStatus.ONLINE
        assert "match_started" not in notifier.events("c-alice")
    finally:
        slow.shutdown()


async def test_disconnect_during_round_delay_cancels_next_round(notifier, store, coin):
    slow = DuelCoordinator(
        notifier=notifier,
        store=store,
        rules=MultiplayerConfig(room_start_delay=0, round_delay=60),
        coin_source=coin,
    )
    try:
        match_id = await start_quick_match(slow, notifier)
        await slow.handle("c-alice", move("make_call", match_id, "heads"))
        await slow.handle("c-bob", move("make_prediction", match_id, "tails"))
        assert slow.pending_timers() == [f"match:{match_id}"]

        await slow.detach("c-alice")

        assert slow.pending_timers() == []
        assert notifier.last("c-bob", "match_ended")["winnerIdentity"] == "bob"
        assert "next_round" not in notifier.events("c-bob")
    finally:
        slow.shutdown()


@pytest.mark.parametrize(
    "message, expected",
    [
        ({"type": "quick_match", "rounds": 3, "betAmount": 1000}, "Insufficient coins for this bet"),
        ({"type": "quick_match", "rounds": 3}, "Invalid betAmount"),
        ({"type": "join_private_room", "roomCode": "ZZZZZZ"}, "Room not found"),
        ({"type": "make_call", "matchId": "nope", "prediction": "heads"}, "Match not found"),
        ({"type": "teleport"}, "Unknown message type: teleport"),
    ],
)
async def test_rejected_events_leave_state_unchanged(duel, notifier, message, expected):
    await duel.attach("c-alice", "alice")
    notifier.clear()

    await duel.handle("c-alice", message)

    assert notifier.events("c-alice") == ["error"]
    assert notifier.last("c-alice", "error")["message"].startswith(expected)
    player = duel.registry.find("c-alice")
    assert player.status == PlayerStatus.ONLINE
    assert not duel.matchmaking.is_searching(player)


async def test_wrong_turn_is_rejected_in_match(duel, notifier):
    match_id = await start_quick_match(duel, notifier)

    await duel.handle("c-bob", move("make_call", match_id, "heads"))
    assert notifier.last("c-bob", "error")["message"] == "It's not your turn to call"

    await duel.handle("c-alice", move("make_prediction", match_id, "heads"))
    assert notifier.last("c-alice", "error")["message"] == "The caller cannot predict this round"

    await duel.handle("c-alice", move("make_call", match_id, "sideways"))
    assert "Invalid prediction" in notifier.last("c-alice", "error")["message"]
    assert duel.engine.get(match_id).current_round.caller_prediction is None


async def test_busy_player_cannot_matchmake(duel, notifier):
    await start_quick_match(duel, notifier)
    await duel.handle("c-alice", {"type": "create_private_room", "rounds": 3, "betAmount": 10})
    assert notifier.last("c-alice", "error")["message"] == "Finish your current room or match first"


async def test_reconnect_supersedes_old_connection(duel, notifier, store):
    await start_quick_match(duel, notifier)

    await duel.attach("c-alice-2", "alice")

    assert notifier.last("c-alice", "error") == {"message": "Signed in from another connection"}
    assert "c-alice" not in duel.registry
    assert duel.registry.find("c-alice-2").status == PlayerStatus.ONLINE
    assert notifier.last("c-bob", "match_ended")["winnerIdentity"] == "bob"
    assert len(duel.registry) == 2


async def test_lobby_then_quick_match(duel, notifier):
    await connect_pair(duel)
    await duel.handle("c-alice", {"type": "join_lobby"})
    await duel.handle("c-bob", {"type": "join_lobby"})
    assert notifier.last("c-alice", "player_joined_lobby") == {"username": "bob"}

    await duel.handle("c-alice", QUICK)
    await duel.handle("c-alice", {"type": "cancel_search"})
    assert notifier.events("c-alice")[-1] == "search_cancelled"
    assert duel.registry.find("c-alice").status == PlayerStatus.ONLINE


async def test_loser_cannot_restake_lost_coins_while_settling(duel, notifier, store, coin):
    await connect_pair(duel)
    await duel.attach("c-carol", "carol")
    all_in = {"type": "quick_match", "rounds": 1, "betAmount": 100}
    await duel.handle("c-alice", all_in)
    await duel.handle("c-bob", all_in)
    match_id = notifier.last("c-alice", "match_started")["matchId"]

    store.write_gate.clear()
    coin.queue("heads")
    await duel.handle("c-alice", move("make_call", match_id, "heads"))
    settling = asyncio.create_task(duel.handle("c-bob", move("make_prediction", match_id, "tails")))
    try:
        await yield_until(lambda: duel.engine.active_count() == 0)
        bob = duel.registry.find("c-bob")
        assert bob.status == PlayerStatus.ONLINE
        assert bob.cached_wallet == 0
        assert duel.registry.find("c-alice").cached_wallet == 200

        await duel.handle("c-bob", all_in)
        assert notifier.last("c-bob", "error")["message"] == "Insufficient coins for this bet"
        await duel.handle("c-carol", all_in)
        assert notifier.events("c-carol")[-1] == "looking_for_match"
    finally:
        store.write_gate.set()
    await settling

    assert store.users["bob"]["total_coins"] == 0
    assert notifier.last("c-bob", "match_ended")["newBalance"] == 0
    assert duel.registry.find("c-bob").cached_wallet == 0
    assert duel.registry.find("c-alice").cached_wallet == 200


async def test_reconnect_while_settling_receives_result(duel, notifier, store):
    await start_quick_match(duel, notifier)

    store.write_gate.clear()
    leaving = asyncio.create_task(duel.detach("c-alice"))
    try:
        await yield_until(lambda: duel.engine.active_count() == 0)
        await duel.attach("c-alice-2", "alice")
        # Stored balance is still 100; the forfeited bet is already counted
        assert notifier.last("c-alice-2", "connected")["wallet"] == 90
    finally:
        store.write_gate.set()
    await leaving

    ended = notifier.last("c-alice-2", "match_ended")
    assert ended["winnerIdentity"] == "bob"
    assert ended["newBalance"] == 90
    assert duel.registry.find("c-alice-2").cached_wallet == 90
    assert duel.registry.find("c-bob").cached_wallet == 110


async def test_failed_write_restores_cached_wallet(duel, notifier, store, coin):
    match_id = await start_quick_match(duel, notifier)
    duel.engine.get(match_id).player1.score = 1
    store.fail_for.add("bob")

    coin.queue("heads")
    await duel.handle("c-alice", move("make_call", match_id, "heads"))
    await duel.handle("c-bob", move("make_prediction", match_id, "tails"))

    ended = notifier.last("c-bob", "match_ended")
    assert ended["persisted"] is False
    assert ended["newBalance"] == 100
    assert duel.registry.find("c-bob").cached_wallet == 100
    assert duel.registry.find("c-alice").cached_wallet == 110
