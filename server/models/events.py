"""
Event definitions for the Perudo game log.

Every committed change to a game is recorded as an immutable event, enabling:
- Debug inspection of a room's history
- Replaying a game from its first event
- Per-game stats without re-deriving them from snapshots

Events are emitted by game.Game and collected by the owning room.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class EventType(str, Enum):
    """All possible event types in a Perudo game."""

    # Lobby events
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    HOST_CHANGED = "host_changed"
    SETTINGS_UPDATED = "settings_updated"
    PLAYER_DISCONNECTED = "player_disconnected"
    PLAYER_RECONNECTED = "player_reconnected"

    # Lifecycle events
    GAME_STARTED = "game_started"
    ROUND_STARTED = "round_started"
    ROUND_ENDED = "round_ended"
    GAME_ENDED = "game_ended"
    RETURNED_TO_LOBBY = "returned_to_lobby"

    # Gameplay events
    BID_PLACED = "bid_placed"
    DUDO_CALLED = "dudo_called"
    CALZA_CALLED = "calza_called"
    PLAYER_ELIMINATED = "player_eliminated"
    TURN_TIMEOUT = "turn_timeout"


@dataclass
class GameEvent:
    """
    An immutable record of something that happened in a game.

    Attributes:
        event_type: The type of event (from EventType enum).
        game_id: UUID of the game this event belongs to.
        sequence_num: Monotonically increasing sequence number within game.
        timestamp: When the event occurred (UTC).
        player_id: ID of player who triggered the event (if applicable).
        data: Event-specific payload data.
    """

    event_type: EventType
    game_id: str
    sequence_num: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    player_id: Optional[str] = None
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Serialize event to dictionary for JSON storage."""
        return {
            "event_type": self.event_type.value,
            "game_id": self.game_id,
            "sequence_num": self.sequence_num,
            "timestamp": self.timestamp.isoformat(),
            "player_id": self.player_id,
            "data": self.data,
        }

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, d: dict) -> "GameEvent":
        """Deserialize event from dictionary."""
        timestamp = d["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)

        return cls(
            event_type=EventType(d["event_type"]),
            game_id=d["game_id"],
            sequence_num=d["sequence_num"],
            timestamp=timestamp,
            player_id=d.get("player_id"),
            data=d.get("data", {}),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "GameEvent":
        """Deserialize event from JSON string."""
        return cls.from_dict(json.loads(json_str))
