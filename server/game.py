"""
Game state and mutators for Perudo.

This module owns the canonical per-room game data: players, settings, the
live round and the resolution of challenges. It never touches sockets or
clocks beyond a timestamp; the room actor serializes every call into it.

Perudo Rules Summary:
    - Every player rolls their dice in secret at the start of a round
    - The round starter opens with a bid (count, value); each next player
      must raise it, call Dudo (the bid is false) or Calza (it is exact)
    - Dudo: whoever was wrong loses one die
    - Calza: the caller regains a die if exact, loses one otherwise
    - A player with no dice is eliminated; the last player standing wins

Phase flow:
    WAITING -> ROLLING -> BIDDING -> RESOLVING -> ROLLING ... -> GAME_OVER

Every mutator validates fully before changing anything, and raises one of the
errors from errors.py when the command is rejected.
"""

import random
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from constants import (
    DEFAULT_TURN_TIMEOUT_MS,
    MAX_NAME_LENGTH,
    MAX_PLAYERS,
    MAX_STARTING_DICE,
    MAX_TURN_TIMEOUT_MS,
    MIN_NAME_LENGTH,
    MIN_PLAYERS,
    MIN_STARTING_DICE,
    MIN_TURN_TIMEOUT_MS,
    PLAYER_COLORS,
    STARTING_DICE,
)
from errors import AuthorizationError, CapacityError, NotFoundError, ValidationError
from rules import Bid, check_raise, resolve_calza, resolve_dudo, roll_dice


class GamePhase(str, Enum):
    """
    Phases of a Perudo room.

    Flow: WAITING -> ROLLING -> BIDDING -> RESOLVING -> ROLLING | GAME_OVER
    RETURN_TO_LOBBY takes GAME_OVER back to WAITING.
    """

    WAITING = "waiting"      # Lobby, players join and the host edits settings
    ROLLING = "rolling"      # Between rounds, waiting for the next deal
    BIDDING = "bidding"      # Turn-based bidding loop
    RESOLVING = "resolving"  # A challenge is being settled
    GAME_OVER = "game_over"  # One player left standing


@dataclass
class Player:
    """
    A seated player.

    Attributes:
        id: Durable client identity; survives reconnects.
        name: Display name (2-12 characters).
        color: Cosmetic seat color.
        dice_count: Dice still owned (0 means eliminated).
        hand: Faces rolled this round; private to the owner.
        is_host: Whether this player controls the lobby.
        is_connected: Whether a live socket is attached.
        is_cpu: Whether this seat is driven by the server AI.
        disconnected_at: Epoch seconds of the last disconnect.
        palifico_used: Whether this player's one-die palifico round has happened.
    """

    id: str
    name: str
    color: str = PLAYER_COLORS[0]
    dice_count: int = STARTING_DICE
    hand: list[int] = field(default_factory=list)
    is_host: bool = False
    is_connected: bool = True
    is_cpu: bool = False
    disconnected_at: Optional[float] = None
    palifico_used: bool = False

    @property
    def is_eliminated(self) -> bool:
        return self.dice_count == 0

    def to_public_dict(self) -> dict:
        """Seat info safe to broadcast (never includes the hand)."""
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "diceCount": self.dice_count,
            "isHost": self.is_host,
            "isConnected": self.is_connected,
            "isEliminated": self.is_eliminated,
            "isCpu": self.is_cpu,
        }


# Client-facing setting names, camelCase or snake_case, mapped to fields
SETTING_KEYS = {
    "maxPlayers": "max_players",
    "max_players": "max_players",
    "startingDice": "starting_dice",
    "startingDiceCount": "starting_dice",
    "starting_dice": "starting_dice",
    "allowSpectators": "allow_spectators",
    "allow_spectators": "allow_spectators",
    "palificoEnabled": "palifico_enabled",
    "palifico_enabled": "palifico_enabled",
    "turnTimeoutMs": "turn_timeout_ms",
    "turn_timeout_ms": "turn_timeout_ms",
}


@dataclass
class GameSettings:
    """
    Room settings, a closed set of named options.

    Unknown keys sent by clients are ignored; known keys with out-of-range
    values are rejected.
    """

    max_players: int = MAX_PLAYERS
    starting_dice: int = STARTING_DICE
    allow_spectators: bool = True
    palifico_enabled: bool = True
    turn_timeout_ms: int = DEFAULT_TURN_TIMEOUT_MS

    def validate(self) -> None:
        for name in ("max_players", "starting_dice", "turn_timeout_ms"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValidationError(f"{name} must be an integer", "INVALID_SETTINGS")
        for name in ("allow_spectators", "palifico_enabled"):
            if not isinstance(getattr(self, name), bool):
                raise ValidationError(f"{name} must be true or false", "INVALID_SETTINGS")
        if not MIN_PLAYERS <= self.max_players <= MAX_PLAYERS:
            raise ValidationError(
                f"maxPlayers must be between {MIN_PLAYERS} and {MAX_PLAYERS}", "INVALID_SETTINGS"
            )
        if not MIN_STARTING_DICE <= self.starting_dice <= MAX_STARTING_DICE:
            raise ValidationError(
                f"startingDice must be between {MIN_STARTING_DICE} and {MAX_STARTING_DICE}",
                "INVALID_SETTINGS",
            )
        # 0 disables the turn timer
        if self.turn_timeout_ms and not (
            MIN_TURN_TIMEOUT_MS <= self.turn_timeout_ms <= MAX_TURN_TIMEOUT_MS
        ):
            raise ValidationError(
                f"turnTimeoutMs must be 0 or between {MIN_TURN_TIMEOUT_MS} and {MAX_TURN_TIMEOUT_MS}",
                "INVALID_SETTINGS",
            )

    def updated(self, changes: dict) -> "GameSettings":
        """Return a validated copy with `changes` applied."""
        if not isinstance(changes, dict):
            raise ValidationError("settings must be an object", "INVALID_SETTINGS")
        values = asdict(self)
        for key, raw in changes.items():
            name = SETTING_KEYS.get(key)
            if name is not None:
                values[name] = raw
        candidate = GameSettings(**values)
        candidate.validate()
        return candidate

    def to_dict(self) -> dict:
        return {
            "maxPlayers": self.max_players,
            "startingDice": self.starting_dice,
            "allowSpectators": self.allow_spectators,
            "palificoEnabled": self.palifico_enabled,
            "turnTimeoutMs": self.turn_timeout_ms,
        }


@dataclass
class RoundState:
    """
    The live bidding round.

    Attributes:
        number: 1-based round counter within the game.
        starter_id: Player who opened the round.
        turn_order: Active player ids, starter first.
        current_turn_player_id: Whose move it is (None once resolved).
        is_palifico: Jokers are disabled this round.
        current_bid: Standing bid, None before the opening bid.
        last_bidder_id: Who placed current_bid.
        bids: Every bid of the round, in order.
        turn_started_at: Epoch seconds when the current turn began.
        last_action_was_timeout: The last move was made by the turn timer.
    """

    number: int
    starter_id: str
    turn_order: list[str]
    current_turn_player_id: Optional[str]
    is_palifico: bool = False
    current_bid: Optional[Bid] = None
    last_bidder_id: Optional[str] = None
    bids: list[tuple[str, Bid]] = field(default_factory=list)
    turn_started_at: float = field(default_factory=time.time)
    last_action_was_timeout: bool = False

    def pass_turn(self, player_id: Optional[str]) -> None:
        self.current_turn_player_id = player_id
        self.turn_started_at = time.time()

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "starterId": self.starter_id,
            "turnOrder": list(self.turn_order),
            "currentTurnPlayerId": self.current_turn_player_id,
            "isPalifico": self.is_palifico,
            "currentBid": self.current_bid.to_dict() if self.current_bid else None,
            "lastBidderId": self.last_bidder_id,
            "bidHistory": [
                {"playerId": pid, "bid": bid.to_dict()} for pid, bid in self.bids
            ],
            "turnStartedAt": int(self.turn_started_at * 1000),
            "lastActionWasTimeout": self.last_action_was_timeout,
        }


@dataclass
class RoundResult:
    """Outcome of a Dudo or Calza, broadcast with every hand revealed."""

    round_number: int
    bid: Bid
    bidder_id: Optional[str]
    caller_id: str
    actual_count: int
    is_calza: bool
    loser_id: Optional[str]
    winner_id: Optional[str]
    all_hands: dict[str, list[int]]
    player_dice_counts: dict[str, int]
    eliminated_ids: list[str] = field(default_factory=list)
    is_palifico: bool = False
    next_starter_id: Optional[str] = None
    game_winner_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "roundNumber": self.round_number,
            "bid": self.bid.to_dict(),
            "bidderId": self.bidder_id,
            "callerId": self.caller_id,
            "actualCount": self.actual_count,
            "isCalza": self.is_calza,
            "loserId": self.loser_id,
            "winnerId": self.winner_id,
            "allHands": {pid: list(hand) for pid, hand in self.all_hands.items()},
            "playerDiceCounts": dict(self.player_dice_counts),
            "eliminatedIds": list(self.eliminated_ids),
            "isPalifico": self.is_palifico,
            "nextStarterId": self.next_starter_id,
            "gameWinnerId": self.game_winner_id,
        }


@dataclass
class PlayerStats:
    """Per-game counters reported when the game ends."""

    bids_placed: int = 0
    dudos_called: int = 0
    dudos_successful: int = 0
    calzas_called: int = 0
    calzas_successful: int = 0
    dice_lost: int = 0
    dice_gained: int = 0

    def to_dict(self) -> dict:
        return {
            "bidsPlaced": self.bids_placed,
            "dudosCalled": self.dudos_called,
            "dudosSuccessful": self.dudos_successful,
            "calzasCalled": self.calzas_called,
            "calzasSuccessful": self.calzas_successful,
            "diceLost": self.dice_lost,
            "diceGained": self.dice_gained,
        }


@dataclass
class Game:
    """
    Canonical state of one Perudo room.

    Attributes:
        settings: Current room settings.
        players: Seated players in join order.
        phase: Current game phase.
        round: The live (or just-resolved) round.
        round_number: Rounds dealt so far in this game.
        next_starter_id: Who opens the next round.
        winner_id: Winner once the game is over.
        last_result: Outcome of the most recent challenge.
        stats: Per-player counters for the current game.
        total_bids: Bids placed in the current game.
        rng: Random source for dice; seed it for reproducible games.
        game_id: Unique identifier for the event log.
    """

    settings: GameSettings = field(default_factory=GameSettings)
    players: list[Player] = field(default_factory=list)
    phase: GamePhase = GamePhase.WAITING
    round: Optional[RoundState] = None
    round_number: int = 0
    next_starter_id: Optional[str] = None
    winner_id: Optional[str] = None
    last_result: Optional[RoundResult] = None
    stats: dict[str, PlayerStats] = field(default_factory=dict)
    total_bids: int = 0
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    # Event log support
    game_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    _event_emitter: Optional[Callable[["GameEvent"], None]] = field(
        default=None, repr=False, compare=False
    )
    _sequence_num: int = field(default=0, repr=False, compare=False)

    def set_event_emitter(self, emitter: Callable[["GameEvent"], None]) -> None:
        """
        Set callback for event emission.

        The emitter is called with each GameEvent as it occurs.

        Args:
            emitter: Callback function that receives GameEvent objects.
        """
        self._event_emitter = emitter

    def _emit(
        self,
        event_type: str,
        player_id: Optional[str] = None,
        **data: Any,
    ) -> None:
        """
        Emit an event if emitter is configured.

        Args:
            event_type: Event type string (from EventType enum).
            player_id: ID of player who triggered the event.
            **data: Event-specific data fields.
        """
        if self._event_emitter is None:
            return

        # Import here to avoid circular dependency
        from models.events import GameEvent, EventType

        self._sequence_num += 1
        event = GameEvent(
            event_type=EventType(event_type),
            game_id=self.game_id,
            sequence_num=self._sequence_num,
            player_id=player_id,
            data=data,
        )
        self._event_emitter(event)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_player(self, player_id: Optional[str]) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def require_player(self, player_id: str) -> Player:
        player = self.get_player(player_id)
        if player is None:
            raise AuthorizationError("You are not seated in this room", "NOT_IN_ROOM")
        return player

    def require_host(self, player_id: str) -> Player:
        player = self.require_player(player_id)
        if not player.is_host:
            raise AuthorizationError("Only the host can do that", "NOT_HOST")
        return player

    @property
    def host(self) -> Optional[Player]:
        for player in self.players:
            if player.is_host:
                return player
        return None

    @property
    def in_progress(self) -> bool:
        return self.phase in (GamePhase.ROLLING, GamePhase.BIDDING, GamePhase.RESOLVING)

    def active_players(self) -> list[Player]:
        """Non-eliminated players in join order."""
        return [p for p in self.players if not p.is_eliminated]

    def current_player(self) -> Optional[Player]:
        if self.phase != GamePhase.BIDDING or self.round is None:
            return None
        return self.get_player(self.round.current_turn_player_id)

    def get_hand(self, player_id: str) -> list[int]:
        player = self.get_player(player_id)
        return list(player.hand) if player else []

    def dice_in_play(self) -> int:
        return sum(len(p.hand) for p in self.active_players())

    def _next_in_seat_order(
        self,
        player_id: str,
        predicate: Callable[[Player], bool],
    ) -> Optional[Player]:
        """First player after `player_id` in join order (wrapping) matching predicate."""
        ids = [p.id for p in self.players]
        if player_id not in ids:
            return None
        start = ids.index(player_id)
        n = len(self.players)
        for step in range(1, n):
            candidate = self.players[(start + step) % n]
            if predicate(candidate):
                return candidate
        return None

    def _host_successor(self, player_id: str, connected_only: bool = True) -> Optional[Player]:
        """Earliest-joined human other than `player_id`, connected unless told otherwise."""
        for player in self.players:
            if player.id == player_id or player.is_cpu:
                continue
            if player.is_connected or not connected_only:
                return player
        return None

    # -------------------------------------------------------------------------
    # Lobby
    # -------------------------------------------------------------------------

    @staticmethod
    def validate_name(name: Any) -> str:
        """Trim and check a display name, raising INVALID_NAME."""
        if not isinstance(name, str):
            raise ValidationError("Name must be text", "INVALID_NAME")
        name = name.strip()
        if not MIN_NAME_LENGTH <= len(name) <= MAX_NAME_LENGTH:
            raise ValidationError(
                f"Name must be {MIN_NAME_LENGTH}-{MAX_NAME_LENGTH} characters", "INVALID_NAME"
            )
        return name

    def add_player(self, player_id: str, name: str, is_cpu: bool = False) -> Player:
        """
        Seat a new player in the lobby.

        The first player seated becomes host.

        Raises:
            CapacityError: Room is full or the game has started.
            ValidationError: Bad name or duplicate identity.
        """
        if self.phase != GamePhase.WAITING:
            raise CapacityError("Game already in progress", "GAME_IN_PROGRESS")
        if len(self.players) >= self.settings.max_players:
            raise CapacityError("Room is full", "ROOM_FULL", maxPlayers=self.settings.max_players)
        if self.get_player(player_id):
            raise ValidationError("Already seated in this room", "ALREADY_JOINED")
        name = self.validate_name(name)

        used_colors = {p.color for p in self.players}
        color = next((c for c in PLAYER_COLORS if c not in used_colors), PLAYER_COLORS[0])

        player = Player(
            id=player_id,
            name=name,
            color=color,
            dice_count=self.settings.starting_dice,
            is_host=self.host is None and not is_cpu,
            is_cpu=is_cpu,
        )
        self.players.append(player)

        self._emit(
            "player_joined",
            player_id=player_id,
            player_name=name,
            color=color,
            is_cpu=is_cpu,
        )
        return player

    def remove_player(self, player_id: str, reason: str = "left") -> Player:
        """
        Remove a player from the room (leave or kick).

        Mid-game, the player's dice leave play. If fewer than two active
        players remain the game ends; otherwise a bidding round in progress
        is voided and redealt without them.

        Args:
            player_id: The player to remove.
            reason: Why the player left (left, kicked).

        Returns:
            The removed Player.
        """
        player = self.get_player(player_id)
        if player is None:
            raise NotFoundError("No such player in this room", "PLAYER_NOT_FOUND")

        successor = self._next_in_seat_order(player_id, lambda p: not p.is_eliminated)
        new_host = None
        if player.is_host:
            new_host = (
                self._host_successor(player_id)
                or self._host_successor(player_id, connected_only=False)
                or self._next_in_seat_order(player_id, lambda p: True)
            )

        was_bidding = self.phase == GamePhase.BIDDING and not player.is_eliminated
        turn_holder = self.round.current_turn_player_id if self.round else None

        self.players.remove(player)
        player.is_host = False
        self._emit("player_left", player_id=player_id, reason=reason)

        if new_host is not None:
            new_host.is_host = True
            self._emit("host_changed", player_id=new_host.id, previous_host_id=player_id)

        if not self.in_progress:
            return player

        if self.next_starter_id == player_id:
            self.next_starter_id = successor.id if successor else None

        active = self.active_players()
        if len(active) <= 1:
            self._end_game(active[0].id if active else None)
        elif was_bidding:
            if turn_holder and turn_holder != player_id:
                self.next_starter_id = turn_holder
            elif successor:
                self.next_starter_id = successor.id
            self.phase = GamePhase.ROLLING
            self.roll_new_round()

        return player

    def set_connected(self, player_id: str, connected: bool) -> Player:
        """
        Mark a player's socket as attached or gone.

        The seat, dice and turn position are kept either way. When the host
        disconnects, hosting moves to the earliest-joined connected human;
        a reconnecting human reclaims hosting if the host is still absent.
        """
        player = self.require_player(player_id)
        player.is_connected = connected
        player.disconnected_at = None if connected else time.time()
        self._emit("player_reconnected" if connected else "player_disconnected", player_id=player_id)

        host = self.host
        if not connected and player.is_host:
            new_host = self._host_successor(player_id)
            if new_host is not None:
                player.is_host = False
                new_host.is_host = True
                self._emit("host_changed", player_id=new_host.id, previous_host_id=player_id)
        elif connected and not player.is_cpu and host is not None and not host.is_connected:
            host.is_host = False
            player.is_host = True
            self._emit("host_changed", player_id=player_id, previous_host_id=host.id)

        return player

    def update_settings(self, player_id: str, changes: dict) -> GameSettings:
        """Host-only partial settings update, allowed in the lobby."""
        self.require_host(player_id)
        if self.phase != GamePhase.WAITING:
            raise ValidationError("Settings can only change in the lobby", "WRONG_PHASE")

        new_settings = self.settings.updated(changes)
        if new_settings.max_players < len(self.players):
            raise ValidationError(
                f"{len(self.players)} players are already seated", "INVALID_SETTINGS"
            )

        self.settings = new_settings
        for player in self.players:
            player.dice_count = new_settings.starting_dice

        self._emit("settings_updated", player_id=player_id, settings=new_settings.to_dict())
        return new_settings

    # -------------------------------------------------------------------------
    # Game lifecycle
    # -------------------------------------------------------------------------

    def start_game(self, player_id: str, dice_counts: Optional[dict[str, int]] = None) -> None:
        """
        Start the game from the lobby and deal the first round.

        Args:
            player_id: Must be the host.
            dice_counts: Optional per-player starting dice (Gauntlet carries
                dice between duels); others get settings.starting_dice.
        """
        self.require_host(player_id)
        if self.phase != GamePhase.WAITING:
            raise ValidationError("Game already started", "WRONG_PHASE")
        connected = [p for p in self.players if p.is_connected]
        if len(connected) < MIN_PLAYERS:
            raise ValidationError(
                f"Need at least {MIN_PLAYERS} connected players", "NOT_ENOUGH_PLAYERS"
            )

        dice_counts = dice_counts or {}
        for player in self.players:
            player.dice_count = dice_counts.get(player.id, self.settings.starting_dice)
            player.hand = []
            player.palifico_used = False

        self.stats = {p.id: PlayerStats() for p in self.players}
        self.round = None
        self.round_number = 0
        self.total_bids = 0
        self.winner_id = None
        self.last_result = None
        self.next_starter_id = self.players[0].id
        self.phase = GamePhase.ROLLING

        self._emit(
            "game_started",
            player_id=player_id,
            player_order=[p.id for p in self.players],
            dice_counts={p.id: p.dice_count for p in self.players},
            settings=self.settings.to_dict(),
        )

        self.roll_new_round()

    def _pick_starter(self, active: list[Player]) -> Player:
        starter = self.get_player(self.next_starter_id)
        if starter is None or starter.is_eliminated:
            starter = active[0]
        if not starter.is_connected:
            replacement = self._next_in_seat_order(
                starter.id, lambda p: p.is_connected and not p.is_eliminated
            )
            if replacement is not None:
                starter = replacement
        return starter

    def _detect_palifico(self, active: list[Player]) -> bool:
        if not self.settings.palifico_enabled:
            return False
        singles = [p for p in active if p.dice_count == 1]
        if len(singles) != 1 or singles[0].palifico_used:
            return False
        singles[0].palifico_used = True
        return True

    def roll_new_round(self, player_id: Optional[str] = None) -> RoundState:
        """
        Deal fresh hands and open a bidding round.

        Args:
            player_id: The player asking for the deal, or None for an
                internal deal. Must be an active player when given.
        """
        if self.phase == GamePhase.WAITING:
            raise ValidationError("The game has not started", "GAME_NOT_STARTED")
        if self.phase != GamePhase.ROLLING:
            raise ValidationError("Dice can only be rolled between rounds", "WRONG_PHASE")
        if player_id is not None:
            requester = self.require_player(player_id)
            if requester.is_eliminated:
                raise ValidationError("Eliminated players cannot roll", "PLAYER_ELIMINATED")

        active = self.active_players()
        starter = self._pick_starter(active)
        is_palifico = self._detect_palifico(active)

        for player in self.players:
            player.hand = roll_dice(player.dice_count, self.rng) if not player.is_eliminated else []

        idx = active.index(starter)
        order = [p.id for p in active[idx:] + active[:idx]]

        self.round_number += 1
        self.round = RoundState(
            number=self.round_number,
            starter_id=starter.id,
            turn_order=order,
            current_turn_player_id=starter.id,
            is_palifico=is_palifico,
        )
        self.next_starter_id = starter.id
        self.phase = GamePhase.BIDDING

        self._emit(
            "round_started",
            player_id=player_id,
            round_number=self.round_number,
            starter_id=starter.id,
            turn_order=order,
            is_palifico=is_palifico,
            dice={p.id: len(p.hand) for p in active},
        )
        return self.round

    def reset_to_lobby(self, player_id: str) -> None:
        """Host-only: return a finished game to the lobby with fresh dice."""
        self.require_host(player_id)
        if self.phase != GamePhase.GAME_OVER:
            raise ValidationError("The game is not over", "WRONG_PHASE")

        for player in self.players:
            player.dice_count = self.settings.starting_dice
            player.hand = []
            player.palifico_used = False

        self.phase = GamePhase.WAITING
        self.round = None
        self.round_number = 0
        self.winner_id = None
        self.last_result = None
        self.next_starter_id = None
        self._emit("returned_to_lobby", player_id=player_id)

    # -------------------------------------------------------------------------
    # Bidding
    # -------------------------------------------------------------------------

    def _require_turn(self, player_id: str) -> Player:
        if self.phase == GamePhase.WAITING:
            raise ValidationError("The game has not started", "GAME_NOT_STARTED")
        if self.phase != GamePhase.BIDDING or self.round is None:
            raise ValidationError(f"Cannot act during {self.phase.value}", "WRONG_PHASE")
        player = self.require_player(player_id)
        if player.is_eliminated:
            raise ValidationError("You have been eliminated", "PLAYER_ELIMINATED")
        if self.round.current_turn_player_id != player_id:
            raise ValidationError(
                "It is not your turn",
                "NOT_YOUR_TURN",
                currentPlayerId=self.round.current_turn_player_id,
            )
        return player

    def _next_turn_after(self, player_id: str) -> str:
        """
        Next player to act after `player_id`.

        Prefers the next connected, non-eliminated player in turn order. If
        nobody else is connected, falls back to the next non-eliminated one.
        """
        order = self.round.turn_order
        n = len(order)
        start = order.index(player_id) if player_id in order else -1
        candidates = [self.get_player(order[(start + step) % n]) for step in range(1, n + 1)]
        others = [p for p in candidates if p and p.id != player_id and not p.is_eliminated]
        for player in others:
            if player.is_connected:
                return player.id
        if others:
            return others[0].id
        return player_id

    def apply_bid(self, player_id: str, bid: Bid) -> RoundState:
        """
        Place a bid for the player whose turn it is.

        Raises:
            ValidationError: Wrong phase, not your turn, or not a raise.
        """
        self._require_turn(player_id)
        rnd = self.round
        reason = check_raise(rnd.current_bid, bid, rnd.is_palifico)
        if reason:
            raise ValidationError(
                reason,
                "INVALID_BID",
                currentBid=rnd.current_bid.to_dict() if rnd.current_bid else None,
            )

        rnd.current_bid = bid
        rnd.last_bidder_id = player_id
        rnd.bids.append((player_id, bid))
        rnd.last_action_was_timeout = False
        self.stats.setdefault(player_id, PlayerStats()).bids_placed += 1
        self.total_bids += 1
        rnd.pass_turn(self._next_turn_after(player_id))

        self._emit(
            "bid_placed",
            player_id=player_id,
            count=bid.count,
            value=bid.value,
            next_player_id=rnd.current_turn_player_id,
        )
        return rnd

    def apply_dudo(self, player_id: str) -> RoundResult:
        """Challenge the standing bid. Whoever was wrong loses a die."""
        self._require_turn(player_id)
        rnd = self.round
        if rnd.current_bid is None:
            raise ValidationError("There is no bid to challenge", "NO_STANDING_BID")

        self.phase = GamePhase.RESOLVING
        outcome = resolve_dudo(self._live_hands(), rnd.current_bid, rnd.is_palifico)
        bidder_id = rnd.last_bidder_id

        stats = self.stats.setdefault(player_id, PlayerStats())
        stats.dudos_called += 1
        if outcome.bidder_loses:
            stats.dudos_successful += 1
            loser_id, winner_id = bidder_id, player_id
        else:
            loser_id, winner_id = player_id, bidder_id

        self._emit(
            "dudo_called",
            player_id=player_id,
            bid=rnd.current_bid.to_dict(),
            actual_count=outcome.actual_count,
            loser_id=loser_id,
        )
        return self._finish_round(
            caller_id=player_id,
            actual_count=outcome.actual_count,
            is_calza=False,
            loser_id=loser_id,
            winner_id=winner_id,
        )

    def apply_calza(self, player_id: str) -> RoundResult:
        """
        Claim the standing bid is exact.

        An exact count gives the caller one die back, never above the
        game's starting count. Otherwise the caller loses a die.
        """
        self._require_turn(player_id)
        rnd = self.round
        if rnd.current_bid is None:
            raise ValidationError("Calza needs a standing bid", "NO_STANDING_BID")

        self.phase = GamePhase.RESOLVING
        outcome = resolve_calza(self._live_hands(), rnd.current_bid, rnd.is_palifico)

        stats = self.stats.setdefault(player_id, PlayerStats())
        stats.calzas_called += 1
        if outcome.caller_wins:
            stats.calzas_successful += 1

        self._emit(
            "calza_called",
            player_id=player_id,
            bid=rnd.current_bid.to_dict(),
            actual_count=outcome.actual_count,
            success=outcome.caller_wins,
        )
        return self._finish_round(
            caller_id=player_id,
            actual_count=outcome.actual_count,
            is_calza=True,
            loser_id=None if outcome.caller_wins else player_id,
            winner_id=player_id if outcome.caller_wins else rnd.last_bidder_id,
            gainer_id=player_id if outcome.caller_wins else None,
        )

    def _live_hands(self) -> list[list[int]]:
        return [p.hand for p in self.active_players()]

    def _finish_round(
        self,
        caller_id: str,
        actual_count: int,
        is_calza: bool,
        loser_id: Optional[str],
        winner_id: Optional[str],
        gainer_id: Optional[str] = None,
    ) -> RoundResult:
        rnd = self.round
        all_hands = {p.id: list(p.hand) for p in self.active_players()}
        eliminated: list[str] = []

        if loser_id is not None:
            loser = self.get_player(loser_id)
            loser.dice_count -= 1
            self.stats.setdefault(loser_id, PlayerStats()).dice_lost += 1
            if loser.dice_count == 0:
                self.eliminate(loser_id)
                eliminated.append(loser_id)

        if gainer_id is not None:
            gainer = self.get_player(gainer_id)
            new_count = min(gainer.dice_count + 1, self.settings.starting_dice)
            if new_count > gainer.dice_count:
                self.stats.setdefault(gainer_id, PlayerStats()).dice_gained += 1
            gainer.dice_count = new_count
            if gainer.dice_count > 1:
                gainer.palifico_used = False

        # The seat after the loser opens next; an exact Calza lets the caller open
        if gainer_id is not None:
            self.next_starter_id = gainer_id
        else:
            successor = self._next_in_seat_order(loser_id, lambda p: not p.is_eliminated)
            self.next_starter_id = successor.id if successor else loser_id

        for player in self.players:
            player.hand = []
        rnd.current_turn_player_id = None

        if self.phase != GamePhase.GAME_OVER:
            self.phase = GamePhase.ROLLING

        result = RoundResult(
            round_number=rnd.number,
            bid=rnd.current_bid,
            bidder_id=rnd.last_bidder_id,
            caller_id=caller_id,
            actual_count=actual_count,
            is_calza=is_calza,
            loser_id=loser_id,
            winner_id=winner_id,
            all_hands=all_hands,
            player_dice_counts={p.id: p.dice_count for p in self.players},
            eliminated_ids=eliminated,
            is_palifico=rnd.is_palifico,
            next_starter_id=self.next_starter_id if self.phase != GamePhase.GAME_OVER else None,
            game_winner_id=self.winner_id,
        )
        self.last_result = result

        self._emit(
            "round_ended",
            player_id=caller_id,
            round_number=rnd.number,
            loser_id=loser_id,
            winner_id=winner_id,
            is_calza=is_calza,
            dice_counts=result.player_dice_counts,
        )
        return result

    def eliminate(self, player_id: str) -> Player:
        """
        Take a player out of play.

        Ends the game when only one active player remains.
        """
        player = self.require_player(player_id)
        player.dice_count = 0
        player.hand = []

        if self.round and player_id in self.round.turn_order:
            if self.phase == GamePhase.BIDDING and self.round.current_turn_player_id == player_id:
                self.round.pass_turn(self._next_turn_after(player_id))
            self.round.turn_order.remove(player_id)

        self._emit("player_eliminated", player_id=player_id)

        active = self.active_players()
        if self.in_progress and len(active) <= 1:
            self._end_game(active[0].id if active else None)
        return player

    def end_by_abandonment(self) -> Optional[str]:
        """
        End a game nobody came back to.

        The winner is the connected active player, or the first active
        player in join order if nobody is connected.
        """
        if not self.in_progress:
            raise ValidationError("No game in progress", "WRONG_PHASE")
        active = self.active_players()
        connected = [p for p in active if p.is_connected]
        winner = connected[0] if connected else (active[0] if active else None)
        self._end_game(winner.id if winner else None, reason="abandoned")
        return self.winner_id

    def _end_game(self, winner_id: Optional[str], reason: str = "last_standing") -> None:
        self.phase = GamePhase.GAME_OVER
        self.winner_id = winner_id
        if self.round is not None:
            self.round.current_turn_player_id = None
        for player in self.players:
            player.hand = []
        self._emit(
            "game_ended",
            player_id=winner_id,
            winner_id=winner_id,
            reason=reason,
            rounds_played=self.round_number,
        )

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def game_stats(self) -> dict:
        return {
            "roundsPlayed": self.round_number,
            "totalBids": self.total_bids,
            "winnerId": self.winner_id,
            "playerStats": {pid: s.to_dict() for pid, s in self.stats.items()},
        }

    def get_state(self) -> dict:
        """
        Public game state, identical for every recipient.

        Hands are never included; each player receives theirs separately.
        """
        return {
            "phase": self.phase.value,
            "players": [p.to_public_dict() for p in self.players],
            "hostId": self.host.id if self.host else None,
            "settings": self.settings.to_dict(),
            "roundNumber": self.round_number,
            "round": self.round.to_dict() if self.round else None,
            "totalDice": sum(p.dice_count for p in self.active_players()),
            "winnerId": self.winner_id,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
        }
