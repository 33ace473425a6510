import os
import sys
import tempfile
import threading
from collections import deque

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Keep the module-level database out of the project tree
os.environ.setdefault("DB_PATH", os.path.join(tempfile.mkdtemp(prefix="coinduel-"), "test.db"))
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from coinduel.config import MultiplayerConfig
from coinduel.core.exceptions import StorageError
from coinduel.core.multiplayer.coordinator import DuelCoordinator
from coinduel.core.websocket import Notification


class FakeStore:
    """In-memory stand-in for the user store."""

    def __init__(self, **balances):
        self.users = {}
        self.history = []
        self.fail_for = set()
        # Cleared to hold stat writes until the test sets it again
        self.write_gate = threading.Event()
        self.write_gate.set()
        for name, coins in balances.items():
            self.add(name, coins)

    def add(self, username, coins=100, xp=0):
        self.users[username] = {
            "username": username,
            "total_coins": coins,
            "total_xp": xp,
            "multiplayer_matches_played": 0,
            "multiplayer_matches_won": 0,
            "multiplayer_matches_lost": 0,
            "multiplayer_rounds_won": 0,
            "multiplayer_rounds_lost": 0,
        }

    def get_user(self, username):
        if username in self.fail_for:
            raise StorageError("store offline")
        user = self.users.get(username)
        return dict(user) if user else None

    def get_or_create_user(self, username):
        if username not in self.users:
            self.add(username)
        return self.get_user(username)

    def update_user_stats(self, username, delta):
        self.write_gate.wait(timeout=5)
        if username in self.fail_for:
            raise StorageError("store offline")
        user = self.users[username]
        for key, value in delta.items():
            user[key] += value
        return dict(user)

    def add_game_history(self, username, entry):
        self.history.append((username, entry))


class RecordingNotifier:
    """Captures outbound events per connection instead of sending them."""

    def __init__(self):
        self.sent = []
        self.closed = set()

    async def notify(self, connection_ref, event, payload=None):
        if connection_ref in self.closed:
            return False
        self.sent.append(Notification(connection_ref, event, payload or {}))
        return True

    async def deliver(self, notifications):
        for n in notifications:
            await self.notify(n.target, n.event, n.payload)

    def events(self, connection_ref):
        return [n.event for n in self.sent if n.target == connection_ref]

    def last(self, connection_ref, event):
        for n in reversed(self.sent):
            if n.target == connection_ref and n.event == event:
                return n.payload
        return None

    def clear(self):
        self.sent.clear()


class ScriptedCoin:
    """Coin source that returns queued results, then heads."""

    def __init__(self):
        self.results = deque()

    def queue(self, *results):
        self.results.extend(results)

    def __call__(self):
        return self.results.popleft() if self.results else "heads"


@pytest.fixture
def rules():
    return MultiplayerConfig(room_start_delay=0, round_delay=0)


@pytest.fixture
def store():
    return FakeStore(alice=100, bob=100, carol=100)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def coin():
    return ScriptedCoin()


@pytest.fixture
def duel(notifier, store, rules, coin):
    coordinator = DuelCoordinator(notifier=notifier, store=store, rules=rules, coin_source=coin)
    yield coordinator
    coordinator.shutdown()
