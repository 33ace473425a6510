"""
Database module for persistent storage.
Uses SQLite for user balances, experience, multiplayer statistics and
per-match history. This is the user store the duel coordinator settles
into; it is only ever reached through get/update-by-username calls.
"""

import sqlite3
from pathlib import Path
from typing import Optional, List, Dict
from datetime import datetime
import threading

from coinduel.core.exceptions import StorageError
from coinduel.core.logger import get_logger
from coinduel.config import settings

# Get logger for this module
logger = get_logger("database")

# Database path from config (resolved relative to project root)
DB_PATH = settings.paths.get_db_path()

# Columns update_user_stats may increment
STAT_COLUMNS = (
    "total_coins",
    "total_xp",
    "multiplayer_matches_played",
    "multiplayer_matches_won",
    "multiplayer_matches_lost",
    "multiplayer_rounds_won",
    "multiplayer_rounds_lost",
)


class Database:
    """Thread-safe SQLite database wrapper keyed by username."""

    def __init__(self, db_path: Path = None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self._local = threading.local()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initializing database at {self.db_path}")
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if getattr(self._local, "connection", None) is None:
            self._local.connection = sqlite3.connect(
                str(self.db_path), check_same_thread=False
            )
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    def _init_db(self):
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT UNIQUE NOT NULL,
                total_coins INTEGER DEFAULT 100,
                total_xp INTEGER DEFAULT 0,
                multiplayer_matches_played INTEGER DEFAULT 0,
                multiplayer_matches_won INTEGER DEFAULT 0,
                multiplayer_matches_lost INTEGER DEFAULT 0,
                multiplayer_rounds_won INTEGER DEFAULT 0,
                multiplayer_rounds_lost INTEGER DEFAULT 0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        # One row per player per settled match
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS game_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL,
                game_type TEXT DEFAULT 'multiplayer',
                match_id TEXT,
                opponent_username TEXT,
                bet_amount INTEGER DEFAULT 0,
                won INTEGER DEFAULT 0,
                win_amount INTEGER DEFAULT 0,
                balance_after INTEGER,
                xp_gained INTEGER DEFAULT 0,
                level_at_time INTEGER DEFAULT 1,
                rounds_won INTEGER DEFAULT 0,
                rounds_lost INTEGER DEFAULT 0,
                timestamp TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        conn.commit()

    # ==================== Users ====================

    def create_user(self, username: str, coins: int = None) -> Dict:
        """Create a user with the configured starting balance."""
        if coins is None:
            coins = settings.economy.starting_coins

        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO users (username, total_coins, updated_at) VALUES (?, ?, ?)",
                (username, coins, datetime.now().isoformat()),
            )
            conn.commit()
        except sqlite3.IntegrityError:
            return {"success": False, "error": "Username already taken"}
        except sqlite3.Error as e:
            raise StorageError(f"create_user({username}) failed: {e}") from e

        logger.info(f"Created new user: {username}")
        return {"success": True, "user": self.get_user(username)}

    def get_user(self, username: str) -> Optional[Dict]:
        """Get user by username, or None."""
        try:
            cursor = self._get_connection().cursor()
            cursor.execute("SELECT * FROM users WHERE username = ?", (username,))
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"get_user({username}) failed: {e}") from e
        return dict(row) if row else None

    def get_or_create_user(self, username: str) -> Dict:
        user = self.get_user(username)
        if user is None:
            self.create_user(username)
            user = self.get_user(username)
        return user

    def update_user_stats(self, username: str, delta: Dict[str, int]) -> Dict:
        """
        Apply additive deltas to a user's stat columns in one statement.

        Increments are applied by the database rather than read-modify-write,
        so two writers touching the same user cannot lose each other's update.

        Raises:
            StorageError: unknown column, unknown user, or sqlite failure
        """
        unknown = set(delta) - set(STAT_COLUMNS)
        if unknown:
            raise StorageError(f"Unknown stat columns: {sorted(unknown)}")

        columns = [c for c in STAT_COLUMNS if delta.get(c)]
        assignments = [f"{c} = {c} + ?" for c in columns] + ["updated_at = ?"]
        params = [int(delta[c]) for c in columns] + [datetime.now().isoformat(), username]

        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE users SET {', '.join(assignments)} WHERE username = ?",
                params,
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise StorageError(f"User not found: {username}")
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"update_user_stats({username}) failed: {e}") from e

        return self.get_user(username)

    # ==================== History ====================

    def add_game_history(self, username: str, entry: Dict):
        """Record one settled match from a player's point of view."""
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO game_history (
                    username, game_type, match_id, opponent_username, bet_amount,
                    won, win_amount, balance_after, xp_gained, level_at_time,
                    rounds_won, rounds_lost
                ) VALUES (?, 'multiplayer', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    username,
                    entry.get("match_id"),
                    entry.get("opponent_username"),
                    entry.get("bet_amount", 0),
                    1 if entry.get("won") else 0,
                    entry.get("win_amount", 0),
                    entry.get("balance_after"),
                    entry.get("xp_gained", 0),
                    entry.get("level_at_time", 1),
                    entry.get("rounds_won", 0),
                    entry.get("rounds_lost", 0),
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"add_game_history({username}) failed: {e}") from e

    def get_game_history(self, username: str, limit: int = 50) -> List[Dict]:
        cursor = self._get_connection().cursor()
        cursor.execute(
            """
            SELECT * FROM game_history WHERE username = ?
            ORDER BY id DESC LIMIT ?
        """,
            (username, limit),
        )
        return [dict(row) for row in cursor.fetchall()]


# Singleton instance
db = Database()
