"""
Gauntlet mode: a solitaire ladder of 1v1 duels against CPU opponents.

The human's dice carry over from duel to duel; each CPU opponent starts
fresh. Opponents get harder as the run goes on:

    Rounds 1-3: turtle     (Easy)
    Rounds 4-6: calculator (Medium)
    Rounds 7+:  shark      (Hard)

The run ends when the human loses a duel (their last die). The number of
duels won is the streak, and the final streak is the leaderboard score.

Each duel is an ordinary two-seat room; the CPU plays it through the same
room commands as any client.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from errors import NotFoundError, ValidationError
from game import Game, GameSettings
from protocol import ServerMessageType, server_message
from room import Room, RoomManager

logger = logging.getLogger(__name__)

GAUNTLET_STARTING_DICE = 5

# (last round of tier or None, personality, label)
DIFFICULTY_TIERS = [
    (3, "turtle", "Easy"),
    (6, "calculator", "Medium"),
    (None, "shark", "Hard"),
]


def tier_for_round(round_number: int) -> tuple[str, str]:
    """(personality, difficulty label) for a Gauntlet round."""
    for last_round, personality, label in DIFFICULTY_TIERS:
        if last_round is None or round_number <= last_round:
            return personality, label
    return DIFFICULTY_TIERS[-1][1], DIFFICULTY_TIERS[-1][2]


@dataclass
class GauntletRun:
    """
    One player's run up the ladder.

    Attributes:
        player_id: Client identity of the runner.
        player_name: Display name used in every duel.
        dice: Dice carried into the next duel.
        streak: Duels won so far.
        round: 1-based number of the current (or next) duel.
        over: Whether the run has ended.
        room_code: Room of the current duel.
        opponent_name: Name of the current CPU opponent.
        duel_finished: Whether the current duel has been scored.
    """

    player_id: str
    player_name: str
    dice: int = GAUNTLET_STARTING_DICE
    streak: int = 0
    round: int = 1
    over: bool = False
    room_code: Optional[str] = None
    opponent_name: Optional[str] = None
    duel_finished: bool = True
    started_at: float = field(default_factory=time.time)

    @property
    def personality(self) -> str:
        return tier_for_round(self.round)[0]

    @property
    def difficulty(self) -> str:
        return tier_for_round(self.round)[1]

    def record_duel(self, won: bool, dice_left: int) -> None:
        """Score the finished duel."""
        self.duel_finished = True
        if won:
            self.streak += 1
            self.round += 1
            self.dice = dice_left
        else:
            self.dice = 0
            self.over = True

    def to_dict(self) -> dict:
        return {
            "playerId": self.player_id,
            "playerName": self.player_name,
            "dice": self.dice,
            "streak": self.streak,
            "round": self.round,
            "difficulty": self.difficulty,
            "personality": self.personality,
            "opponentName": self.opponent_name,
            "roomCode": self.room_code,
            "duelFinished": self.duel_finished,
            "over": self.over,
            "finalScore": self.streak if self.over else None,
        }


class GauntletManager:
    """Tracks Gauntlet runs and sets up their duel rooms."""

    def __init__(self, room_manager: RoomManager):
        self.room_manager = room_manager
        self.runs: dict[str, GauntletRun] = {}

    def get_run(self, player_id: str) -> Optional[GauntletRun]:
        return self.runs.get(player_id)

    async def start(self, ctx, player_name: str) -> GauntletRun:
        """Begin a fresh run (abandoning any previous one) and its first duel."""
        name = Game.validate_name(player_name)
        previous = self.runs.pop(ctx.client_id, None)
        if previous is not None:
            await self._close_duel(previous)

        run = GauntletRun(player_id=ctx.client_id, player_name=name)
        self.runs[ctx.client_id] = run
        logger.info(f"Gauntlet run started for {ctx.client_id}")
        await self._start_duel(ctx, run)
        return run

    async def next_duel(self, ctx) -> GauntletRun:
        """Advance to the next duel after a win."""
        run = self.runs.get(ctx.client_id)
        if run is None:
            raise NotFoundError("No Gauntlet run in progress", "GAUNTLET_NOT_FOUND")
        if run.over:
            raise ValidationError("This Gauntlet run is over", "WRONG_PHASE")
        if not run.duel_finished:
            raise ValidationError("Finish the current duel first", "WRONG_PHASE")

        await self._close_duel(run)
        await self._start_duel(ctx, run)
        return run

    async def _start_duel(self, ctx, run: GauntletRun) -> None:
        settings = GameSettings(
            max_players=2,
            starting_dice=GAUNTLET_STARTING_DICE,
            allow_spectators=False,
            palifico_enabled=True,
        )
        room = self.room_manager.create_room(settings=settings)
        room.on_game_over(self._on_duel_over)
        run.room_code = room.code
        run.duel_finished = False

        await room.attach(run.player_id, run.player_name, ctx.websocket)
        ctx.current_room = room
        ctx.is_spectator = False

        cpu_id = await room.add_cpu(run.player_id, personality=run.personality)
        cpu = room.game.get_player(cpu_id)
        run.opponent_name = cpu.name if cpu else None

        await self._send_state(room, run)
        await room.start_game(
            run.player_id, ctx.websocket, dice_counts={run.player_id: run.dice},
        )
        logger.info(
            f"Gauntlet duel {run.round} for {run.player_id}: "
            f"{run.dice} dice vs {run.opponent_name} ({run.personality})"
        )

    async def _on_duel_over(self, room: Room) -> None:
        run = next((r for r in self.runs.values() if r.room_code == room.code), None)
        if run is None or run.duel_finished:
            return

        player = room.game.get_player(run.player_id)
        won = room.game.winner_id == run.player_id
        run.record_duel(won, player.dice_count if player else 0)
        logger.info(
            f"Gauntlet duel {'won' if won else 'lost'} by {run.player_id}, streak={run.streak}"
        )
        await self._send_state(room, run)

    async def _send_state(self, room: Room, run: GauntletRun) -> None:
        member = room.get_member(run.player_id)
        if member is None or member.websocket is None:
            return
        try:
            await member.websocket.send_json(server_message(
                ServerMessageType.GAUNTLET_STATE, run=run.to_dict(),
            ))
        except Exception as e:
            logger.debug(f"Failed to send Gauntlet state: {e}")

    async def _close_duel(self, run: GauntletRun) -> None:
        if run.room_code is not None:
            await self.room_manager.remove_room(run.room_code)
            run.room_code = None

    def prune(self) -> int:
        """Forget runs whose duel room has been cleaned up. Returns how many."""
        stale = [
            player_id for player_id, run in self.runs.items()
            if run.room_code is None or run.room_code not in self.room_manager.rooms
        ]
        for player_id in stale:
            del self.runs[player_id]
        return len(stale)
