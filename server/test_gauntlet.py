"""
Test suite for Gauntlet mode.

Covers:
- Difficulty tiers by round
- Scoring a duel into the run
- Duel rooms: dice carry-over, advancing, and the end of a run

Run with: pytest test_gauntlet.py -v
"""

import pytest

import ai
from errors import ValidationError
from gauntlet import GAUNTLET_STARTING_DICE, GauntletManager, GauntletRun, tier_for_round
from handlers import ConnectionContext
from room import RoomManager
from rules import Bid
from services.spectator import SpectatorManager


class MockWebSocket:
    """Mock WebSocket that collects sent messages."""

    def __init__(self):
        self.messages: list[dict] = []

    async def send_json(self, data: dict):
        self.messages.append(data)

    async def close(self, code: int = 1000, reason: str = ""):
        pass

    def messages_of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.messages if m.get("type") == msg_type]


def make_ctx(client_id="runner_0001"):
    return ConnectionContext(
        websocket=MockWebSocket(),
        connection_id="conn_1",
        client_id=client_id,
    )


def make_manager() -> GauntletManager:
    rooms = RoomManager(spectators=SpectatorManager(), cpu_enabled=False)
    return GauntletManager(rooms)


async def finish_duel(room, player_id: str, human_wins: bool):
    """Rig the current duel so the next challenge decides it."""
    game = room.game
    cpu_id = next(p.id for p in game.players if p.is_cpu)
    human = game.get_player(player_id)
    cpu = game.get_player(cpu_id)
    if human_wins:
        cpu.dice_count, cpu.hand = 1, [2]
        human.hand = [6] * human.dice_count
    else:
        human.dice_count, human.hand = 1, [2]
        cpu.hand = [3] * cpu.dice_count
    await room.bid(player_id, Bid(1, 6))
    await room.dudo(cpu_id)


@pytest.fixture(autouse=True)
def clean_profiles():
    ai.reset_all_profiles()
    yield
    ai.reset_all_profiles()


# =============================================================================
# Tiers and scoring
# =============================================================================

class TestTiers:

    @pytest.mark.parametrize("round_number,personality,label", [
        (1, "turtle", "Easy"),
        (3, "turtle", "Easy"),
        (4, "calculator", "Medium"),
        (6, "calculator", "Medium"),
        (7, "shark", "Hard"),
        (40, "shark", "Hard"),
    ])
    def test_tier_for_round(self, round_number, personality, label):
        assert tier_for_round(round_number) == (personality, label)


class TestGauntletRun:

    def test_win_carries_dice(self):
        run = GauntletRun(player_id="p", player_name="Runner")
        run.duel_finished = False
        run.record_duel(won=True, dice_left=3)
        assert run.streak == 1
        assert run.round == 2
        assert run.dice == 3
        assert run.duel_finished
        assert not run.over

    def test_loss_ends_run(self):
        run = GauntletRun(player_id="p", player_name="Runner", streak=4, round=5)
        run.record_duel(won=False, dice_left=0)
        assert run.over
        assert run.to_dict()["finalScore"] == 4

    def test_score_hidden_until_over(self):
        run = GauntletRun(player_id="p", player_name="Runner")
        assert run.to_dict()["finalScore"] is None
        assert run.to_dict()["dice"] == GAUNTLET_STARTING_DICE


# =============================================================================
# Duels
# =============================================================================

class TestDuels:

    @pytest.mark.asyncio
    async def test_won_duel_advances(self):
        manager = make_manager()
        ctx = make_ctx()
        run = await manager.start(ctx, "Runner")
        first_room = ctx.current_room

        await finish_duel(first_room, ctx.client_id, human_wins=True)

        assert run.streak == 1
        assert run.duel_finished
        assert run.dice == GAUNTLET_STARTING_DICE
        latest = ctx.websocket.messages_of_type("GAUNTLET_STATE")[-1]["run"]
        assert latest["streak"] == 1

        await manager.next_duel(ctx)
        assert first_room.code not in manager.room_manager.rooms
        assert ctx.current_room is not first_room
        assert ctx.current_room.game.get_player(ctx.client_id).dice_count == run.dice
        await ctx.current_room.close()

    @pytest.mark.asyncio
    async def test_lost_duel_ends_run(self):
        manager = make_manager()
        ctx = make_ctx()
        run = await manager.start(ctx, "Runner")

        await finish_duel(ctx.current_room, ctx.client_id, human_wins=False)

        assert run.over
        assert run.to_dict()["finalScore"] == 0
        with pytest.raises(ValidationError) as exc:
            await manager.next_duel(ctx)
        assert exc.value.code == "WRONG_PHASE"

    @pytest.mark.asyncio
    async def test_restart_abandons_previous_duel(self):
        manager = make_manager()
        ctx = make_ctx()
        await manager.start(ctx, "Runner")
        old_code = ctx.current_room.code

        await manager.start(ctx, "Runner")

        assert old_code not in manager.room_manager.rooms
        assert len(manager.runs) == 1
        await ctx.current_room.close()

    @pytest.mark.asyncio
    async def test_invalid_name(self):
        manager = make_manager()
        with pytest.raises(ValidationError) as exc:
            await manager.start(make_ctx(), "x")
        assert exc.value.code == "INVALID_NAME"
        assert manager.runs == {}

    @pytest.mark.asyncio
    async def test_prune_forgets_runs_without_rooms(self):
        manager = make_manager()
        ctx = make_ctx()
        run = await manager.start(ctx, "Runner")
        await manager.room_manager.remove_room(run.room_code)

        assert manager.prune() == 1
        assert manager.get_run(ctx.client_id) is None
