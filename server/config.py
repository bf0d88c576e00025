"""
Centralized configuration for the Perudo server.

Configuration is loaded from (in order of precedence):
1. Environment variables
2. .env file (if exists)
3. Default values

Usage:
    from config import config
    print(config.PORT)
    print(config.game_defaults.starting_dice)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

import constants

env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get float environment variable."""
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default


@dataclass
class GameDefaults:
    """Default settings for newly created rooms."""
    starting_dice: int = constants.STARTING_DICE
    palifico_enabled: bool = True
    allow_spectators: bool = True
    max_players: int = constants.MAX_PLAYERS
    turn_timeout_ms: int = constants.DEFAULT_TURN_TIMEOUT_MS


@dataclass
class ServerConfig:
    """Server configuration."""
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    # Optional services
    SENTRY_DSN: str = ""
    REDIS_URL: str = ""

    # Room settings
    ROOM_TIMEOUT_MINUTES: int = 60
    ROOM_CLEANUP_INTERVAL_SECONDS: int = 60

    # Connection handling
    RECONNECT_GRACE_SECONDS: float = constants.RECONNECT_GRACE_SECONDS
    DISCONNECTED_TURN_TIMEOUT_SECONDS: float = constants.DISCONNECTED_TURN_TIMEOUT_SECONDS
    SEND_TIMEOUT_SECONDS: float = 5.0

    # CPU players
    CPU_THINK_MIN_SECONDS: float = 0.8
    CPU_THINK_MAX_SECONDS: float = 2.0

    # Leaderboard
    LEADERBOARD_KEY_PREFIX: str = "perudo:leaderboard"

    # Game defaults
    game_defaults: GameDefaults = field(default_factory=GameDefaults)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        return cls(
            HOST=get_env("HOST", "0.0.0.0"),
            PORT=get_env_int("PORT", 8000),
            DEBUG=get_env_bool("DEBUG", False),
            LOG_LEVEL=get_env("LOG_LEVEL", "INFO"),
            ENVIRONMENT=get_env("ENVIRONMENT", "development"),
            SENTRY_DSN=get_env("SENTRY_DSN", ""),
            REDIS_URL=get_env("REDIS_URL", ""),
            ROOM_TIMEOUT_MINUTES=get_env_int("ROOM_TIMEOUT_MINUTES", 60),
            ROOM_CLEANUP_INTERVAL_SECONDS=get_env_int("ROOM_CLEANUP_INTERVAL_SECONDS", 60),
            RECONNECT_GRACE_SECONDS=get_env_float(
                "RECONNECT_GRACE_SECONDS", constants.RECONNECT_GRACE_SECONDS
            ),
            DISCONNECTED_TURN_TIMEOUT_SECONDS=get_env_float(
                "DISCONNECTED_TURN_TIMEOUT_SECONDS", constants.DISCONNECTED_TURN_TIMEOUT_SECONDS
            ),
            SEND_TIMEOUT_SECONDS=get_env_float("SEND_TIMEOUT_SECONDS", 5.0),
            CPU_THINK_MIN_SECONDS=get_env_float("CPU_THINK_MIN_SECONDS", 0.8),
            CPU_THINK_MAX_SECONDS=get_env_float("CPU_THINK_MAX_SECONDS", 2.0),
            LEADERBOARD_KEY_PREFIX=get_env("LEADERBOARD_KEY_PREFIX", "perudo:leaderboard"),
            game_defaults=GameDefaults(
                starting_dice=get_env_int("DEFAULT_STARTING_DICE", constants.STARTING_DICE),
                palifico_enabled=get_env_bool("DEFAULT_PALIFICO", True),
                allow_spectators=get_env_bool("DEFAULT_ALLOW_SPECTATORS", True),
                max_players=get_env_int("MAX_PLAYERS_PER_ROOM", constants.MAX_PLAYERS),
                turn_timeout_ms=get_env_int("DEFAULT_TURN_TIMEOUT_MS", constants.DEFAULT_TURN_TIMEOUT_MS),
            ),
        )


# Global config instance - loaded once at module import
config = ServerConfig.from_env()


def reload_config() -> ServerConfig:
    """Reload configuration from environment (useful for testing)."""
    global config
    config = ServerConfig.from_env()
    return config
