"""
Configuration management for Coin Duel.
Supports config.json with environment variable overrides.
All paths are resolved relative to the project root.
"""

import json
import os
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field

from dotenv import load_dotenv

load_dotenv()

# Project root directory (parent of 'coinduel' folder)
PROJECT_ROOT = Path(__file__).parent.parent


def get_env(key: str, default: str = None) -> Optional[str]:
    """Get environment variable with optional default."""
    return os.environ.get(key, default)


def _parse_bool(val: str) -> bool:
    return val.lower() in ("true", "1", "yes", "on")


# ==================== Configuration Models ====================

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3000
    debug: bool = True
    name: str = "Coin Duel"
    ws_max_messages: int = 10  # Max messages per connection
    ws_rate_limit_seconds: float = 2.0  # In this time window


class SecurityConfig(BaseModel):
    secret_key: str = "CHANGE_THIS_IN_PRODUCTION_PLEASE"
    session_max_age_days: int = 1


class EconomyConfig(BaseModel):
    starting_coins: int = 100


class MultiplayerConfig(BaseModel):
    """Duel rules and pacing."""
    min_rounds: int = 1
    max_rounds: int = 15
    min_bet: int = 1
    max_bet: int = 100000
    room_code_length: int = 6
    room_code_attempts: int = 20
    room_start_delay: float = 2.0  # Seconds between a guest joining and the match starting
    round_delay: float = 3.0  # Seconds between a round result and the next round
    xp_per_round_won: int = 10
    win_bonus_xp: int = 50


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    formatter: str = "color"


class PathsConfig(BaseModel):
    """All paths are relative to PROJECT_ROOT."""
    config_file: str = "config.json"
    database: str = "data/coinduel.db"
    log_file: str = "data/coinduel.log"

    def get_config_path(self) -> Path:
        return PROJECT_ROOT / self.config_file

    def get_db_path(self) -> Path:
        return PROJECT_ROOT / self.database

    def get_log_path(self) -> Path:
        return PROJECT_ROOT / self.log_file


class AppConfig(BaseModel):
    """Main application configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    economy: EconomyConfig = Field(default_factory=EconomyConfig)
    multiplayer: MultiplayerConfig = Field(default_factory=MultiplayerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ==================== Configuration Loading ====================

# Environment variable -> (section, field, parser)
ENV_OVERRIDES = {
    "SERVER_HOST": ("server", "host", str),
    "SERVER_PORT": ("server", "port", int),
    "DEBUG": ("server", "debug", _parse_bool),
    "SECRET_KEY": ("security", "secret_key", str),
    "STARTING_COINS": ("economy", "starting_coins", int),
    "DB_PATH": ("paths", "database", str),
    "ROOM_START_DELAY": ("multiplayer", "room_start_delay", float),
    "ROUND_DELAY": ("multiplayer", "round_delay", float),
    "LOG_LEVEL": ("logging", "level", str),
    "LOG_TO_FILE": ("logging", "log_to_file", _parse_bool),
    "LOG_FORMATTER": ("logging", "formatter", str),
}


def load_config() -> AppConfig:
    """
    Load configuration from config.json with environment variable overrides.
    Environment variables take precedence over config.json values; a value
    that does not parse is ignored.
    """
    config_path = PathsConfig().get_config_path()

    data = {}
    if config_path.exists():
        with open(config_path, "r") as f:
            data = json.load(f)

    for key, (section, field, parse) in ENV_OVERRIDES.items():
        raw = get_env(key)
        if not raw:
            continue
        try:
            data.setdefault(section, {})[field] = parse(raw)
        except ValueError:
            continue

    return AppConfig(**data)


# Global config instance
settings = load_config()
