"""
Game constants for Perudo.

This module is the single source of truth for dice counts, player limits,
room-code format and cosmetic values. Anything an operator may want to tune
at deploy time lives in config.py instead and defaults to these values.

Perudo Summary:
    - Every player starts with the same number of six-sided dice
    - Faces of 1 ("aces") are wild unless the round is palifico
    - A bid claims at least COUNT dice showing VALUE across all hands
    - Dudo challenges the standing bid, Calza claims it is exact
    - Losing a challenge costs one die; no dice left means elimination
"""

# =============================================================================
# Dice
# =============================================================================

DIE_FACES = 6
JOKER_FACE = 1

STARTING_DICE = 5
MIN_STARTING_DICE = 1
MAX_STARTING_DICE = 5


# =============================================================================
# Rooms and players
# =============================================================================

MIN_PLAYERS = 2
MAX_PLAYERS = 6

# No 0/O, 1/I/L: codes are read aloud and typed from screenshots
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 6

MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 12

PLAYER_COLORS = ("blue", "green", "orange", "yellow", "black", "red")

MAX_EMOTE_LENGTH = 4


# =============================================================================
# Timing (seconds)
# =============================================================================

# How long a game with one connected player left waits before awarding the win
RECONNECT_GRACE_SECONDS = 60

# 0 disables the auto-move for a disconnected turn holder
DISCONNECTED_TURN_TIMEOUT_SECONDS = 0

# Per-room turn timer in milliseconds; 0 means wait for the turn holder
DEFAULT_TURN_TIMEOUT_MS = 0
MIN_TURN_TIMEOUT_MS = 10_000
MAX_TURN_TIMEOUT_MS = 120_000


# =============================================================================
# Timeout move
# =============================================================================

# Auto-moves call Dudo only when the standing bid is very likely false
TIMEOUT_DUDO_THRESHOLD = 0.80


# =============================================================================
# Protocol
# =============================================================================

PROTOCOL_VERSION = 1
