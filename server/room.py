"""
Room actor for multiplayer Perudo games.

A Room is the only writer of its Game. Every command (client message, socket
connect/disconnect, CPU move, timer expiry) goes through Room._run, which:

    1. acquires the room's game_lock (asyncio.Lock wakes waiters FIFO, so
       commands apply in arrival order),
    2. checks the caller still owns its identity,
    3. applies the synchronous Game mutator, collecting outgoing messages
       into an Outbox with their sockets resolved at that moment,
    4. releases the lock and only then fans the Outbox out.

No network I/O happens while the lock is held. A failing socket is logged and
skipped; the committed state is never rolled back.

A Room contains:
    - A 6-character code for joining
    - RoomPlayers binding player ids to live sockets (CPUs have none)
    - A Game instance with the canonical state
    - Timers for abandoned games and the turn clock
"""

import asyncio
import logging
import secrets
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from fastapi import WebSocket

from ai import (
    assign_profile,
    assign_specific_profile,
    cleanup_room_profiles,
    get_profile,
    process_cpu_roll,
    process_cpu_turn,
    release_profile,
    timeout_move,
)
from config import config
from constants import MAX_EMOTE_LENGTH
from errors import (
    AuthorizationError,
    CapacityError,
    GameError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from game import Game, GamePhase, GameSettings, RoundResult
from logging_config import get_logger
from protocol import (
    ServerMessageType as M,
    generate_room_code,
    is_valid_room_code,
    normalize_room_code,
    server_message,
)
from rules import Bid
from services.spectator import SpectatorManager, get_spectator_manager

logger = logging.getLogger(__name__)

MAX_EVENT_LOG = 2000


def default_settings() -> GameSettings:
    """Room settings seeded from the server's configured defaults."""
    defaults = config.game_defaults
    return GameSettings(
        max_players=defaults.max_players,
        starting_dice=defaults.starting_dice,
        allow_spectators=defaults.allow_spectators,
        palifico_enabled=defaults.palifico_enabled,
        turn_timeout_ms=defaults.turn_timeout_ms,
    )


@dataclass
class RoomPlayer:
    """
    Binding between a seated player and their live socket.

    This is separate from game.Player - RoomPlayer tracks the connection,
    while game.Player tracks seat, dice and hand.

    Attributes:
        id: Durable client identity.
        name: Display name.
        websocket: Live socket (None for CPU players and while disconnected).
        is_cpu: Whether this is an AI-controlled player.
        reconnect_token: Secret sent only to the seat's owner in ROOM_JOINED;
            required to rebind the seat from another socket.
    """

    id: str
    name: str
    websocket: Optional[WebSocket] = None
    is_cpu: bool = False
    reconnect_token: str = field(default_factory=lambda: secrets.token_urlsafe(24))

    def token_matches(self, token: Optional[str]) -> bool:
        return isinstance(token, str) and secrets.compare_digest(token, self.reconnect_token)


@dataclass
class Outbox:
    """Messages produced by one command, delivered after the lock is released."""

    deliveries: list[tuple[WebSocket, dict]] = field(default_factory=list)
    public: list[dict] = field(default_factory=list)
    to_close: list[WebSocket] = field(default_factory=list)
    changed: bool = True

    def send(self, websocket: Optional[WebSocket], message: dict) -> None:
        if websocket is not None:
            self.deliveries.append((websocket, message))


class Room:
    """
    A game room that hosts one Perudo game at a time.

    Attributes:
        code: 6-character room code.
        game: The canonical Game state.
        members: Player id -> RoomPlayer socket binding, in join order.
        game_lock: Serializes every command for this room.
        version: Monotonic state version, bumped on every committed change.
        events: Recent GameEvents for debugging and replay.
    """

    def __init__(
        self,
        code: str,
        settings: Optional[GameSettings] = None,
        *,
        spectators: Optional[SpectatorManager] = None,
        send_timeout: Optional[float] = None,
        reconnect_grace: Optional[float] = None,
        turn_timeout: Optional[float] = None,
        cpu_enabled: bool = True,
        game: Optional[Game] = None,
    ):
        self.code = code
        self.game = game or Game(settings=settings or default_settings())
        self.members: dict[str, RoomPlayer] = {}
        self.game_lock = asyncio.Lock()
        self.version = 0
        self.created_at = time.time()
        self.last_activity = self.created_at
        self.closed = False
        self.cpu_enabled = cpu_enabled

        self.spectators = spectators or get_spectator_manager()
        self.send_timeout = send_timeout if send_timeout is not None else config.SEND_TIMEOUT_SECONDS
        self.reconnect_grace = (
            reconnect_grace if reconnect_grace is not None else config.RECONNECT_GRACE_SECONDS
        )
        self.turn_timeout = (
            turn_timeout if turn_timeout is not None else config.DISCONNECTED_TURN_TIMEOUT_SECONDS
        )

        self.events: deque = deque(maxlen=MAX_EVENT_LOG)
        self.game.set_event_emitter(self.events.append)

        self._grace_task: Optional[asyncio.Task] = None
        self._turn_timer_task: Optional[asyncio.Task] = None
        self._turn_timer_key: Optional[tuple] = None
        self._cpu_task: Optional[asyncio.Task] = None
        self._game_over_callbacks: list[Callable[["Room"], Awaitable[None]]] = []

        self.log = get_logger(__name__).with_context(room_code=code)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_member(self, player_id: str) -> Optional[RoomPlayer]:
        return self.members.get(player_id)

    def human_player_count(self) -> int:
        return sum(1 for m in self.members.values() if not m.is_cpu)

    def connected_human_count(self) -> int:
        return sum(1 for m in self.members.values() if not m.is_cpu and m.websocket is not None)

    def get_cpu_players(self) -> list[RoomPlayer]:
        return [m for m in self.members.values() if m.is_cpu]

    def snapshot(self) -> dict:
        """Public room state (no hands)."""
        state = self.game.get_state()
        state["roomCode"] = self.code
        state["spectatorCount"] = self.spectators.get_spectator_count(self.code)
        for player in state["players"]:
            if player["isCpu"]:
                profile = get_profile(player["id"])
                if profile:
                    player["style"] = profile.style
        return state

    def info(self) -> dict:
        """Summary used by the HTTP room lookup."""
        return {
            "roomCode": self.code,
            "playerCount": len(self.game.players),
            "maxPlayers": self.game.settings.max_players,
            "phase": self.game.phase.value,
            "inProgress": self.game.in_progress,
            "allowSpectators": self.game.settings.allow_spectators,
        }

    def on_game_over(self, callback: Callable[["Room"], Awaitable[None]]) -> None:
        """Register a coroutine called after a game ends and its messages are sent."""
        self._game_over_callbacks.append(callback)

    # -------------------------------------------------------------------------
    # Serial execution
    # -------------------------------------------------------------------------

    async def _run(self, action: Callable[[Outbox], Any]) -> Any:
        """
        Apply `action` under the room lock, then deliver its messages.

        The action must be synchronous and must raise before mutating
        anything if the command is invalid.
        """
        async with self.game_lock:
            if self.closed:
                raise NotFoundError("Room is closed", "ROOM_NOT_FOUND")
            outbox = Outbox()
            before = (
                self.game.host.id if self.game.host else None,
                self.game.round_number,
                self.game.phase,
            )
            result = action(outbox)
            game_ended = False
            if outbox.changed:
                game_ended = self._append_derived(before, outbox)
                self.version += 1
                self.last_activity = time.time()
                self._broadcast(outbox, server_message(
                    M.ROOM_STATE, state=self.snapshot(), version=self.version,
                ))

        await self._deliver(outbox)
        self._schedule_followups()
        if game_ended:
            for callback in list(self._game_over_callbacks):
                try:
                    await callback(self)
                except Exception:
                    self.log.exception("Game-over callback failed")
        return result

    def _append_derived(self, before: tuple, outbox: Outbox) -> bool:
        """Messages implied by the state change itself."""
        host_before, round_before, phase_before = before
        game = self.game

        host = game.host
        if host is not None and host_before is not None and host.id != host_before:
            self._broadcast(outbox, server_message(
                M.HOST_CHANGED, hostId=host.id, previousHostId=host_before,
            ))

        if game.round_number != round_before and game.phase == GamePhase.BIDDING:
            rnd = game.round
            self._broadcast(outbox, server_message(
                M.DICE_ROLLED,
                roundNumber=rnd.number,
                starterId=rnd.starter_id,
                isPalifico=rnd.is_palifico,
                diceCounts={p.id: p.dice_count for p in game.active_players()},
                totalDice=game.dice_in_play(),
            ))
            for member in self.members.values():
                hand = game.get_hand(member.id)
                if hand and not member.is_cpu:
                    outbox.send(member.websocket, self._hand_message(member.id))

        ended = game.phase == GamePhase.GAME_OVER and phase_before != GamePhase.GAME_OVER
        if ended:
            self._broadcast(outbox, server_message(
                M.GAME_ENDED, winnerId=game.winner_id, stats=game.game_stats(),
            ))
            self.log.info(f"Game over, winner={game.winner_id}")
        return ended

    def _broadcast(self, outbox: Outbox, message: dict, exclude: Optional[str] = None) -> None:
        for player_id, member in self.members.items():
            if player_id != exclude and member.websocket is not None:
                outbox.send(member.websocket, message)
        outbox.public.append(message)

    def _hand_message(self, player_id: str) -> dict:
        return server_message(
            M.YOUR_HAND,
            dice=self.game.get_hand(player_id),
            roundNumber=self.game.round_number,
        )

    async def _deliver(self, outbox: Outbox) -> None:
        per_socket: dict[int, tuple[WebSocket, list[dict]]] = {}
        for websocket, message in outbox.deliveries:
            per_socket.setdefault(id(websocket), (websocket, []))[1].append(message)

        await asyncio.gather(
            *(self._send_in_order(ws, messages) for ws, messages in per_socket.values()),
            self._send_to_spectators(outbox.public),
        )

        for websocket in outbox.to_close:
            try:
                await websocket.close(code=4000, reason="Replaced by a newer connection")
            except Exception as e:
                self.log.debug(f"Closing replaced socket failed: {e}")

    async def _send_in_order(self, websocket: WebSocket, messages: list[dict]) -> None:
        for message in messages:
            try:
                await asyncio.wait_for(websocket.send_json(message), timeout=self.send_timeout)
            except Exception as e:
                error = TransientError(str(e) or type(e).__name__)
                self.log.debug(f"{error.code}: {error.reason}; dropping remaining messages")
                return

    async def _send_to_spectators(self, messages: list[dict]) -> None:
        for message in messages:
            await self.spectators.broadcast_to_spectators(self.code, message)

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def _verify(self, player_id: str, websocket: Optional[WebSocket]) -> RoomPlayer:
        member = self.members.get(player_id)
        if member is None:
            raise AuthorizationError("You are not seated in this room", "NOT_IN_ROOM")
        if websocket is not None and member.websocket is not websocket:
            raise AuthorizationError(
                "This connection was replaced by a newer one", "STALE_CONNECTION"
            )
        return member

    # -------------------------------------------------------------------------
    # Membership commands
    # -------------------------------------------------------------------------

    async def attach(
        self,
        player_id: str,
        name: str,
        websocket: WebSocket,
        reconnect_token: Optional[str] = None,
    ) -> bool:
        """
        Seat a new player, or rebind a known identity to a new socket.

        Rebinding from a different socket needs the seat's reconnect token.
        CPU seats can never be bound to a socket.

        Returns:
            True if this was a reconnection.

        Raises:
            AuthorizationError: CPU seat, or missing or wrong reconnect token.
        """
        def action(outbox: Outbox) -> bool:
            member = self.members.get(player_id)
            if member is not None:
                if member.is_cpu:
                    raise AuthorizationError("That seat belongs to a CPU player", "IMPERSONATION")
                same_socket = member.websocket is not None and member.websocket is websocket
                if not same_socket and not member.token_matches(reconnect_token):
                    raise AuthorizationError(
                        "A valid reconnect token is required to reclaim this seat", "IMPERSONATION"
                    )
                old_socket = member.websocket
                member.websocket = websocket
                if old_socket is not None and old_socket is not websocket:
                    outbox.to_close.append(old_socket)
                self.game.set_connected(player_id, True)
                outbox.send(websocket, server_message(
                    M.ROOM_JOINED,
                    roomCode=self.code,
                    playerId=player_id,
                    reconnected=True,
                    reconnectToken=member.reconnect_token,
                ))
                if self.game.get_hand(player_id):
                    outbox.send(websocket, self._hand_message(player_id))
                self._broadcast(
                    outbox,
                    server_message(M.PLAYER_RECONNECTED, playerId=player_id),
                    exclude=player_id,
                )
                self.log.with_context(player_id=player_id).info("Player reconnected")
                return True

            player = self.game.add_player(player_id, name)
            member = RoomPlayer(id=player_id, name=player.name, websocket=websocket)
            self.members[player_id] = member
            outbox.send(websocket, server_message(
                M.ROOM_JOINED,
                roomCode=self.code,
                playerId=player_id,
                reconnected=False,
                reconnectToken=member.reconnect_token,
            ))
            self._broadcast(
                outbox,
                server_message(M.PLAYER_JOINED, player=player.to_public_dict()),
                exclude=player_id,
            )
            self.log.with_context(player_id=player_id).info(f"{player.name} joined")
            return False

        return await self._run(action)

    async def detach(self, player_id: str, websocket: WebSocket) -> bool:
        """
        Socket closed. Keeps the seat, dice and turn position.

        A close from a socket that was already replaced is ignored.
        """
        def action(outbox: Outbox) -> bool:
            member = self.members.get(player_id)
            if member is None or member.websocket is not websocket:
                outbox.changed = False
                return False
            member.websocket = None
            self.game.set_connected(player_id, False)
            self._broadcast(outbox, server_message(M.PLAYER_DISCONNECTED, playerId=player_id))
            self.log.with_context(player_id=player_id).info("Player disconnected")
            return True

        return await self._run(action)

    def _remove_member(self, outbox: Outbox, player_id: str, reason: str) -> None:
        player = self.game.remove_player(player_id, reason=reason)
        member = self.members.pop(player_id, None)
        if member is not None and member.is_cpu:
            release_profile(player_id)
        self._broadcast(outbox, server_message(
            M.PLAYER_LEFT, playerId=player_id, playerName=player.name, reason=reason,
        ))

    async def leave(self, player_id: str, websocket: Optional[WebSocket]) -> None:
        def action(outbox: Outbox) -> None:
            self._verify(player_id, websocket)
            self._remove_member(outbox, player_id, "left")
            outbox.send(websocket, server_message(M.LEFT_ROOM, roomCode=self.code))
            self.log.with_context(player_id=player_id).info("Player left")

        await self._run(action)

    async def kick(self, host_id: str, target_id: str, websocket: Optional[WebSocket]) -> None:
        def action(outbox: Outbox) -> None:
            self._verify(host_id, websocket)
            self.game.require_host(host_id)
            if target_id == host_id:
                raise ValidationError("The host cannot kick themselves", "INVALID_ACTION")
            target = self.members.get(target_id)
            if target is None:
                raise NotFoundError("No such player in this room", "PLAYER_NOT_FOUND")
            outbox.send(target.websocket, server_message(
                M.KICKED, roomCode=self.code, reason="kicked",
            ))
            self._remove_member(outbox, target_id, "kicked")
            self.log.with_context(player_id=target_id).info(f"Kicked by {host_id}")

        await self._run(action)

    async def update_settings(
        self, player_id: str, changes: dict, websocket: Optional[WebSocket] = None
    ) -> GameSettings:
        def action(outbox: Outbox) -> GameSettings:
            self._verify(player_id, websocket)
            settings = self.game.update_settings(player_id, changes)
            self._broadcast(outbox, server_message(M.SETTINGS_UPDATED, settings=settings.to_dict()))
            return settings

        return await self._run(action)

    async def add_cpu(
        self,
        host_id: str,
        profile_name: Optional[str] = None,
        websocket: Optional[WebSocket] = None,
        personality: Optional[str] = None,
        cpu_id: Optional[str] = None,
    ) -> str:
        """Host-only: seat a CPU opponent. Returns its player id."""
        def action(outbox: Outbox) -> str:
            self._verify(host_id, websocket)
            self.game.require_host(host_id)
            if len(self.game.players) >= self.game.settings.max_players:
                raise CapacityError(
                    "Room is full", "ROOM_FULL", maxPlayers=self.game.settings.max_players
                )
            if self.game.phase != GamePhase.WAITING:
                raise CapacityError("Game already in progress", "GAME_IN_PROGRESS")

            new_id = cpu_id or f"cpu_{uuid.uuid4().hex[:12]}"
            if profile_name:
                profile = assign_specific_profile(new_id, profile_name, self.code)
            else:
                profile = assign_profile(new_id, self.code, personality=personality)
            if profile is None:
                raise ValidationError("CPU profile not available", "PROFILE_UNAVAILABLE")

            try:
                player = self.game.add_player(new_id, profile.name, is_cpu=True)
            except GameError:
                release_profile(new_id)
                raise
            self.members[new_id] = RoomPlayer(id=new_id, name=profile.name, is_cpu=True)
            self._broadcast(outbox, server_message(M.PLAYER_JOINED, player=player.to_public_dict()))
            return new_id

        return await self._run(action)

    async def remove_cpu(
        self, host_id: str, cpu_id: Optional[str] = None, websocket: Optional[WebSocket] = None
    ) -> str:
        """Host-only: remove a CPU (the most recently added one by default)."""
        def action(outbox: Outbox) -> str:
            self._verify(host_id, websocket)
            self.game.require_host(host_id)
            cpus = self.get_cpu_players()
            if cpu_id is not None:
                cpus = [c for c in cpus if c.id == cpu_id]
            if not cpus:
                raise NotFoundError("No CPU player to remove", "PLAYER_NOT_FOUND")
            target = cpus[-1].id
            self._remove_member(outbox, target, "removed")
            return target

        return await self._run(action)

    # -------------------------------------------------------------------------
    # Game commands
    # -------------------------------------------------------------------------

    async def start_game(
        self,
        player_id: str,
        websocket: Optional[WebSocket] = None,
        dice_counts: Optional[dict[str, int]] = None,
    ) -> None:
        def action(outbox: Outbox) -> None:
            self._verify(player_id, websocket)
            self.game.start_game(player_id, dice_counts=dice_counts)
            self._broadcast(outbox, server_message(
                M.GAME_STARTED,
                playerOrder=[p.id for p in self.game.players],
                diceCounts={p.id: p.dice_count for p in self.game.players},
            ))
            self.log.info(f"Game started with {len(self.game.players)} players")

        await self._run(action)

    async def roll_dice(self, player_id: str, websocket: Optional[WebSocket] = None) -> None:
        def action(outbox: Outbox) -> None:
            self._verify(player_id, websocket)
            self.game.roll_new_round(player_id)

        await self._run(action)

    def _do_bid(self, outbox: Outbox, player_id: str, bid: Bid) -> None:
        rnd = self.game.apply_bid(player_id, bid)
        self._broadcast(outbox, server_message(
            M.BID_PLACED,
            playerId=player_id,
            bid=bid.to_dict(),
            nextPlayerId=rnd.current_turn_player_id,
        ))

    def _do_challenge(self, outbox: Outbox, player_id: str, calza: bool) -> RoundResult:
        standing = self.game.round.current_bid if self.game.round else None
        if calza:
            result = self.game.apply_calza(player_id)
        else:
            result = self.game.apply_dudo(player_id)
        self._broadcast(outbox, server_message(
            M.CALZA_CALLED if calza else M.DUDO_CALLED,
            playerId=player_id,
            bid=standing.to_dict() if standing else None,
        ))
        self._broadcast(outbox, server_message(M.ROUND_RESULT, **result.to_dict()))
        return result

    async def bid(self, player_id: str, bid: Bid, websocket: Optional[WebSocket] = None) -> None:
        def action(outbox: Outbox) -> None:
            self._verify(player_id, websocket)
            self._do_bid(outbox, player_id, bid)

        await self._run(action)

    async def dudo(self, player_id: str, websocket: Optional[WebSocket] = None) -> RoundResult:
        def action(outbox: Outbox) -> RoundResult:
            self._verify(player_id, websocket)
            return self._do_challenge(outbox, player_id, calza=False)

        return await self._run(action)

    async def calza(self, player_id: str, websocket: Optional[WebSocket] = None) -> RoundResult:
        def action(outbox: Outbox) -> RoundResult:
            self._verify(player_id, websocket)
            return self._do_challenge(outbox, player_id, calza=True)

        return await self._run(action)

    async def return_to_lobby(self, player_id: str, websocket: Optional[WebSocket] = None) -> None:
        def action(outbox: Outbox) -> None:
            self._verify(player_id, websocket)
            self.game.reset_to_lobby(player_id)
            self._broadcast(outbox, server_message(M.RETURNED_TO_LOBBY))

        await self._run(action)

    async def emote(self, player_id: str, emote: str, websocket: Optional[WebSocket] = None) -> None:
        def action(outbox: Outbox) -> None:
            self._verify(player_id, websocket)
            text = emote.strip() if isinstance(emote, str) else ""
            if not text or len(text) > MAX_EMOTE_LENGTH:
                raise ValidationError(
                    f"Emotes are 1-{MAX_EMOTE_LENGTH} characters", "INVALID_EMOTE"
                )
            outbox.changed = False
            self._broadcast(outbox, server_message(M.EMOTE_RECEIVED, playerId=player_id, emote=text))

        await self._run(action)

    # -------------------------------------------------------------------------
    # Spectators
    # -------------------------------------------------------------------------

    async def add_spectator(self, websocket: WebSocket, name: Optional[str] = None) -> None:
        def action(outbox: Outbox) -> None:
            if not self.game.settings.allow_spectators:
                raise AuthorizationError("This room does not allow spectators", "SPECTATORS_DISABLED")
            if not self.spectators.add_spectator(self.code, websocket, username=name):
                raise CapacityError("Too many spectators", "SPECTATORS_FULL")
            outbox.changed = False
            outbox.send(websocket, server_message(
                M.ROOM_JOINED, roomCode=self.code, playerId=None, spectator=True,
            ))
            outbox.send(websocket, server_message(
                M.ROOM_STATE, state=self.snapshot(), version=self.version,
            ))

        await self._run(action)

    async def remove_spectator(self, websocket: WebSocket) -> None:
        self.spectators.remove_spectator(self.code, websocket)

    # -------------------------------------------------------------------------
    # Timers and CPU driver
    # -------------------------------------------------------------------------

    def _connected_active_count(self) -> int:
        return sum(1 for p in self.game.active_players() if p.is_connected)

    def _schedule_followups(self) -> None:
        if self.closed:
            return
        game = self.game

        # Abandoned game: at most one connected player left standing
        abandoned = game.in_progress and self._connected_active_count() <= 1
        if abandoned and self._grace_task is None:
            self._grace_task = asyncio.create_task(self._grace_timer())
        elif not abandoned and self._grace_task is not None:
            self._grace_task.cancel()
            self._grace_task = None

        # Turn timer
        key = self._turn_key()
        if key != self._turn_timer_key:
            if self._turn_timer_task is not None:
                self._turn_timer_task.cancel()
                self._turn_timer_task = None
            self._turn_timer_key = key
            if key is not None:
                limit = self._turn_limit(game.current_player())
                delay = max(0.0, game.round.turn_started_at + limit - time.time())
                self._turn_timer_task = asyncio.create_task(self._turn_timer(key, delay))

        if self.cpu_enabled and self._next_cpu_actor() is not None:
            if self._cpu_task is None or self._cpu_task.done():
                self._cpu_task = asyncio.create_task(self._cpu_loop())

    async def _grace_timer(self) -> None:
        await asyncio.sleep(self.reconnect_grace)
        self._grace_task = None

        def action(outbox: Outbox) -> None:
            if not self.game.in_progress or self._connected_active_count() > 1:
                outbox.changed = False
                return
            winner = self.game.end_by_abandonment()
            self.log.info(f"Grace window expired, awarding game to {winner}")

        await self._run_guarded(action)

    def _turn_limit(self, player) -> float:
        """
        Seconds the turn holder gets before the timer moves for them.

        The room's turnTimeoutMs applies to everyone; a disconnected holder
        also gets the server's disconnected-turn timeout, whichever is shorter.
        0 means wait.
        """
        limits = []
        if self.game.settings.turn_timeout_ms > 0:
            limits.append(self.game.settings.turn_timeout_ms / 1000)
        if self.turn_timeout > 0 and not player.is_connected:
            limits.append(self.turn_timeout)
        return min(limits) if limits else 0.0

    def _turn_key(self) -> Optional[tuple]:
        """Identifies the turn a timer is armed for; None when no timer applies."""
        current = self.game.current_player()
        if current is None or (current.is_cpu and self.cpu_enabled):
            return None
        if self._turn_limit(current) <= 0:
            return None
        rnd = self.game.round
        return (current.id, rnd.number, len(rnd.bids), current.is_connected)

    async def _turn_timer(self, key: tuple, delay: float) -> None:
        await asyncio.sleep(delay)
        self._turn_timer_task = None
        self._turn_timer_key = None
        player_id = key[0]

        def action(outbox: Outbox) -> None:
            game = self.game
            current = game.current_player()
            if current is None or self._turn_key() != key:
                outbox.changed = False
                return
            move = timeout_move(
                current.hand, game.round.current_bid, game.dice_in_play(), game.round.is_palifico,
            )
            game._emit("turn_timeout", player_id=player_id, action=move.kind)
            self._broadcast(outbox, server_message(
                M.TURN_TIMEOUT,
                playerId=player_id,
                aiAction=move.kind,
                bid=move.bid.to_dict() if move.bid else None,
            ))
            rnd = game.round
            if move.kind == "dudo":
                self._do_challenge(outbox, player_id, calza=False)
            else:
                self._do_bid(outbox, player_id, move.bid)
            rnd.last_action_was_timeout = True

        await self._run_guarded(action)

    async def _run_guarded(self, action: Callable[[Outbox], Any]) -> None:
        try:
            await self._run(action)
        except GameError as e:
            self.log.warning(f"Timer action rejected: {e.code} {e.reason}")

    def _next_cpu_actor(self) -> Optional[str]:
        """CPU that should act now, if any."""
        game = self.game
        if game.phase == GamePhase.BIDDING:
            current = game.current_player()
            if current is not None and current.is_cpu:
                return current.id
            return None
        if game.phase == GamePhase.ROLLING:
            active = game.active_players()
            starter = game.get_player(game.next_starter_id)
            if starter is not None and starter.is_cpu and not starter.is_eliminated:
                return starter.id
            if not any(p.is_connected and not p.is_cpu for p in active):
                cpus = [p for p in active if p.is_cpu]
                return cpus[0].id if cpus else None
        return None

    async def _cpu_loop(self) -> None:
        while not self.closed:
            actor = self._next_cpu_actor()
            if actor is None:
                return
            if self.game.phase == GamePhase.ROLLING:
                moved = await process_cpu_roll(self, actor)
            else:
                moved = await process_cpu_turn(self, actor)
            if not moved and self._next_cpu_actor() == actor:
                self.log.warning(f"CPU {actor} could not move; stopping driver")
                return

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Stop timers, drop spectators and release CPU profiles."""
        self.closed = True
        current = asyncio.current_task()
        for task in (self._grace_task, self._turn_timer_task, self._cpu_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._grace_task = self._turn_timer_task = self._cpu_task = None
        await self.spectators.close_all_for_room(self.code)
        cleanup_room_profiles(self.code)


class RoomManager:
    """
    Manages all active game rooms.

    Provides room creation with unique codes, lookup, and cleanup.
    A single RoomManager instance is used by the server.
    """

    def __init__(self, **room_kwargs) -> None:
        self.rooms: dict[str, Room] = {}
        self._room_kwargs = room_kwargs

    def _generate_code(self, max_attempts: int = 100) -> str:
        """Generate a unique room code."""
        for _ in range(max_attempts):
            code = generate_room_code()
            if code not in self.rooms:
                return code
        raise RuntimeError("Could not generate unique room code")

    def create_room(self, settings: Optional[GameSettings] = None, **room_kwargs) -> Room:
        """Create a new empty room with a unique code."""
        code = self._generate_code()
        room = Room(code=code, settings=settings, **{**self._room_kwargs, **room_kwargs})
        self.rooms[code] = room
        logger.info(f"Room {code} created")
        return room

    def get_room(self, code: str) -> Optional[Room]:
        """Get a room by its code (trimmed, case-insensitive)."""
        return self.rooms.get(normalize_room_code(code))

    def require_room(self, code: str) -> Room:
        """Like get_room, but raises NotFoundError for bad or unknown codes."""
        normalized = normalize_room_code(code)
        if not is_valid_room_code(normalized):
            raise NotFoundError(f"Invalid room code {code!r}", "ROOM_NOT_FOUND")
        room = self.rooms.get(normalized)
        if room is None:
            raise NotFoundError(f"Room {normalized} not found", "ROOM_NOT_FOUND")
        return room

    async def remove_room(self, code: str) -> None:
        room = self.rooms.pop(code, None)
        if room is not None:
            await room.close()
            logger.info(f"Room {code} removed")

    def find_player_room(self, player_id: str) -> Optional[Room]:
        for room in self.rooms.values():
            if player_id in room.members:
                return room
        return None

    async def cleanup_idle_rooms(self, max_idle_seconds: float, now: Optional[float] = None) -> int:
        """
        Remove rooms with no connected humans and no activity for a while.

        Returns:
            Number of rooms removed.
        """
        now = now if now is not None else time.time()
        stale = [
            code for code, room in self.rooms.items()
            if room.connected_human_count() == 0 and now - room.last_activity >= max_idle_seconds
        ]
        for code in stale:
            await self.remove_room(code)
        return len(stale)
