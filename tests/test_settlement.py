import pytest

from coinduel.core.multiplayer.match import Match, MatchStatus, Participant
from coinduel.core.multiplayer.settlement import Settlement


def finished_match(score_a, score_b, bet=10, winner=None, forfeited_by=None):
    match = Match(
        match_id="m1",
        player1=Participant("alice", "c-alice", score_a),
        player2=Participant("bob", "c-bob", score_b),
        total_rounds=3,
        bet_amount=bet,
    )
    match.status = MatchStatus.COMPLETED
    match.winner = winner
    match.forfeited_by = forfeited_by
    return match


@pytest.fixture
def settlement(store, rules):
    return Settlement(store, rules)


def test_plan_conserves_coins(settlement, rules):
    deltas = settlement.plan(finished_match(2, 1, bet=25, winner="alice"))

    assert deltas["alice"].coins == 25
    assert deltas["bob"].coins == -25
    assert sum(d.coins for d in deltas.values()) == 0
    assert deltas["alice"].xp == 2 * rules.xp_per_round_won + rules.win_bonus_xp
    assert deltas["bob"].xp == 1 * rules.xp_per_round_won
    assert deltas["alice"].won and deltas["bob"].lost


def test_plan_draw_moves_no_coins(settlement):
    deltas = settlement.plan(finished_match(1, 1, winner=None))

    assert [d.coins for d in deltas.values()] == [0, 0]
    assert not any(d.won or d.lost for d in deltas.values())


def test_plan_rejects_active_match(settlement):
    match = finished_match(0, 0)
    match.status = MatchStatus.ACTIVE
    with pytest.raises(ValueError):
        settlement.plan(match)


async def test_settle_persists_both_players(settlement, store, rules):
    results = await settlement.settle(finished_match(2, 0, bet=30, winner="alice"))

    assert store.users["alice"]["total_coins"] == 130
    assert store.users["bob"]["total_coins"] == 70
    assert store.users["alice"]["multiplayer_matches_won"] == 1
    assert store.users["bob"]["multiplayer_matches_lost"] == 1
    assert store.users["bob"]["multiplayer_rounds_lost"] == 2

    payload = results["alice"].payload
    assert payload["newBalance"] == 130
    assert payload["coinsWon"] == 30
    assert payload["finalScore"] == {"alice": 2, "bob": 0}
    assert payload["forfeit"] is False
    assert payload["persisted"] is True
    assert payload["xpReward"]["xpGained"] == 2 * rules.xp_per_round_won + rules.win_bonus_xp
    assert payload["levelInfo"]["totalXP"] == store.users["alice"]["total_xp"]
    assert {entry["match_id"] for _, entry in store.history} == {"m1"}


async def test_storage_failure_for_one_player_does_not_block_other(settlement, store):
    store.fail_for.add("bob")

    results = await settlement.settle(
        finished_match(0, 2, bet=10, winner="alice", forfeited_by="bob"),
        cached_wallets={"alice": 100, "bob": 100},
    )

    assert results["alice"].persisted
    assert store.users["alice"]["total_coins"] == 110

    bob = results["bob"]
    assert not bob.persisted
    assert bob.new_balance == 100
    assert bob.payload["xpReward"] is None
    assert bob.payload["persisted"] is False
    assert store.users["bob"]["total_coins"] == 100
    assert [name for name, _ in store.history] == ["alice"]


async def test_forfeit_winner_takes_pot_regardless_of_score(settlement, store):
    results = await settlement.settle(finished_match(0, 1, bet=10, winner="alice", forfeited_by="bob"))

    assert results["alice"].payload["forfeit"] is True
    assert results["alice"].payload["coinsWon"] == 10
    assert store.users["bob"]["total_coins"] == 90
