"""Models package for the Perudo server."""

from .events import EventType, GameEvent

__all__ = [
    "EventType",
    "GameEvent",
]
