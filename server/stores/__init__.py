"""Stores package for Perudo persistence."""

from .leaderboard import LeaderboardEntry, LeaderboardStore

__all__ = [
    "LeaderboardEntry",
    "LeaderboardStore",
]
