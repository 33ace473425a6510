import pytest

from coinduel.core.database import Database
from coinduel.core.exceptions import StorageError


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "users.db")


def test_get_or_create_user_uses_starting_balance(database):
    user = database.get_or_create_user("alice")

    assert user["username"] == "alice"
    assert user["total_coins"] == 100
    assert user["total_xp"] == 0
    # Second call returns the same row
    assert database.get_or_create_user("alice")["id"] == user["id"]


def test_create_user_rejects_duplicate(database):
    assert database.create_user("alice", coins=50)["success"]
    assert not database.create_user("alice")["success"]
    assert database.get_user("alice")["total_coins"] == 50


def test_get_missing_user(database):
    assert database.get_user("nobody") is None


def test_update_user_stats_is_additive(database):
    database.create_user("alice")

    database.update_user_stats("alice", {"total_coins": -30, "multiplayer_matches_played": 1})
    updated = database.update_user_stats("alice", {"total_coins": 5, "multiplayer_matches_played": 1})

    assert updated["total_coins"] == 75
    assert updated["multiplayer_matches_played"] == 2


def test_update_user_stats_errors(database):
    database.create_user("alice")

    with pytest.raises(StorageError):
        database.update_user_stats("alice", {"password": 1})
    with pytest.raises(StorageError):
        database.update_user_stats("nobody", {"total_coins": 1})
    assert database.get_user("alice")["total_coins"] == 100


def test_game_history_newest_first(database):
    database.create_user("alice")
    database.add_game_history("alice", {"match_id": "m1", "opponent_username": "bob", "won": True})
    database.add_game_history("alice", {"match_id": "m2", "opponent_username": "bob", "won": False})

    history = database.get_game_history("alice")

    assert [h["match_id"] for h in history] == ["m2", "m1"]
    assert history[1]["won"] == 1
    assert history[0]["game_type"] == "multiplayer"
