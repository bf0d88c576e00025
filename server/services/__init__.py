"""Services package for the Perudo server."""

from .spectator import SpectatorManager, get_spectator_manager, close_spectator_manager

__all__ = [
    "SpectatorManager",
    "get_spectator_manager",
    "close_spectator_manager",
]
