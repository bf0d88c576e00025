"""
Test suite for the Room actor and RoomManager.

Covers:
- Join / reconnect / stale connection handling
- Message order and state versions
- Fan-out isolation from slow or broken sockets
- Host commands (kick, settings, CPU seats)
- Timers for abandoned games and absent turn holders
- Room codes, lookup and idle cleanup

Run with: pytest test_room.py -v
"""

import asyncio

import pytest

import ai
from config import config
from errors import AuthorizationError, CapacityError, NotFoundError, ValidationError
from game import GamePhase, GameSettings
from room import Room, RoomManager
from rules import Bid
from services.spectator import SpectatorManager


# =============================================================================
# Mock helpers
# =============================================================================

class MockWebSocket:
    """Mock WebSocket that collects sent messages."""

    def __init__(self):
        self.messages: list[dict] = []
        self.closed = False
        self.close_code = None

    async def send_json(self, data: dict):
        self.messages.append(data)

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed = True
        self.close_code = code

    def last_message(self) -> dict:
        return self.messages[-1] if self.messages else {}

    def messages_of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.messages if m.get("type") == msg_type]

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]

    def clear(self):
        self.messages.clear()


class BrokenWebSocket(MockWebSocket):
    """Socket whose sends always fail."""

    async def send_json(self, data: dict):
        raise ConnectionResetError("peer went away")


class SlowWebSocket(MockWebSocket):
    """Socket that never finishes a send within the room's timeout."""

    async def send_json(self, data: dict):
        await asyncio.sleep(5)
        self.messages.append(data)


def make_room(code="ROOM42", cpu_enabled=False, **kwargs) -> Room:
    settings = kwargs.pop("settings", None) or GameSettings()
    kwargs.setdefault("reconnect_grace", 60)
    kwargs.setdefault("turn_timeout", 0)
    return Room(
        code,
        settings,
        spectators=SpectatorManager(),
        cpu_enabled=cpu_enabled,
        **kwargs,
    )


async def seat(room: Room, *player_ids) -> dict[str, MockWebSocket]:
    sockets = {}
    for pid in player_ids:
        ws = MockWebSocket()
        await room.attach(pid, f"Player{pid}", ws)
        sockets[pid] = ws
    return sockets


def token(room: Room, player_id: str) -> str:
    return room.members[player_id].reconnect_token


@pytest.fixture(autouse=True)
def clean_profiles():
    ai.reset_all_profiles()
    yield
    ai.reset_all_profiles()


# =============================================================================
# Joining and reconnecting
# =============================================================================

class TestAttach:

    @pytest.mark.asyncio
    async def test_join_sends_joined_then_state(self):
        room = make_room()
        ws = MockWebSocket()
        reconnected = await room.attach("A", "Alice", ws)

        assert reconnected is False
        assert ws.types() == ["ROOM_JOINED", "ROOM_STATE"]
        assert ws.messages[0]["playerId"] == "A"
        assert ws.messages[1]["version"] == 1
        assert ws.messages[1]["state"]["hostId"] == "A"

    @pytest.mark.asyncio
    async def test_others_see_player_joined(self):
        room = make_room()
        sockets = await seat(room, "A")
        sockets["A"].clear()
        await seat(room, "B")
        assert sockets["A"].types() == ["PLAYER_JOINED", "ROOM_STATE"]
        assert sockets["A"].messages[0]["player"]["id"] == "B"
        assert sockets["A"].messages[1]["version"] == 2

    @pytest.mark.asyncio
    async def test_failed_join_changes_nothing(self):
        room = make_room(settings=GameSettings(max_players=2))
        await seat(room, "A", "B")
        version = room.version
        with pytest.raises(CapacityError):
            await room.attach("C", "Carmen", MockWebSocket())
        assert room.version == version
        assert "C" not in room.members

    @pytest.mark.asyncio
    async def test_reconnect_resends_hand_and_keeps_turn(self):
        room = make_room()
        sockets = await seat(room, "A", "B", "C")
        await room.start_game("A", sockets["A"])
        await room.bid("A", Bid(2, 3), sockets["A"])
        hand_before = room.game.get_hand("B")

        await room.detach("B", sockets["B"])
        assert not room.game.get_player("B").is_connected
        assert room.game.round.current_turn_player_id == "B"

        new_ws = MockWebSocket()
        reconnected = await room.attach("B", "ignored", new_ws, token(room, "B"))

        assert reconnected is True
        assert new_ws.messages[0]["type"] == "ROOM_JOINED"
        assert new_ws.messages[0]["reconnected"] is True
        assert new_ws.messages_of_type("YOUR_HAND")[0]["dice"] == hand_before
        assert room.game.round.current_turn_player_id == "B"
        assert room.game.get_player("B").is_connected
        assert sockets["A"].messages_of_type("PLAYER_RECONNECTED")[0]["playerId"] == "B"
        await room.close()

    @pytest.mark.asyncio
    async def test_takeover_closes_old_socket(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        new_ws = MockWebSocket()
        await room.attach("B", "PlayerB", new_ws, token(room, "B"))

        assert sockets["B"].closed
        assert room.members["B"].websocket is new_ws

    @pytest.mark.asyncio
    async def test_reconnect_token_only_sent_to_owner(self):
        room = make_room()
        sockets = await seat(room, "A", "B")

        joined = sockets["B"].messages_of_type("ROOM_JOINED")[0]
        assert joined["reconnectToken"] == token(room, "B")
        for message in sockets["A"].messages:
            assert token(room, "B") not in str(message)
        for message in room.snapshot()["players"]:
            assert "reconnectToken" not in message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("presented", [None, "", "guessed-token"])
    async def test_takeover_without_token_refused(self, presented):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        version = room.version
        intruder = MockWebSocket()

        with pytest.raises(AuthorizationError) as exc:
            await room.attach("B", "Mallory", intruder, presented)

        assert exc.value.code == "IMPERSONATION"
        assert not sockets["B"].closed
        assert room.members["B"].websocket is sockets["B"]
        assert intruder.messages == []
        assert room.version == version
        await room.close()

    @pytest.mark.asyncio
    async def test_disconnected_seat_needs_token(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        await room.detach("B", sockets["B"])

        with pytest.raises(AuthorizationError):
            await room.attach("B", "Mallory", MockWebSocket())
        assert not room.game.get_player("B").is_connected
        await room.close()

    @pytest.mark.asyncio
    async def test_rejoin_on_same_socket_needs_no_token(self):
        room = make_room()
        sockets = await seat(room, "A")
        assert await room.attach("A", "Alice", sockets["A"]) is True
        assert not sockets["A"].closed

    @pytest.mark.asyncio
    async def test_stale_socket_rejected(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.attach("A", "PlayerA", MockWebSocket(), token(room, "A"))

        with pytest.raises(AuthorizationError) as exc:
            await room.start_game("A", sockets["A"])
        assert exc.value.code == "STALE_CONNECTION"
        assert room.game.phase == GamePhase.WAITING

    @pytest.mark.asyncio
    async def test_stale_close_ignored(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.attach("B", "PlayerB", MockWebSocket(), token(room, "B"))
        version = room.version

        assert await room.detach("B", sockets["B"]) is False
        assert room.game.get_player("B").is_connected
        assert room.version == version

    @pytest.mark.asyncio
    async def test_lobby_disconnect_keeps_seat(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.detach("B", sockets["B"])
        assert "B" in room.members
        assert room.members["B"].websocket is None
        assert sockets["A"].messages_of_type("PLAYER_DISCONNECTED")[0]["playerId"] == "B"


# =============================================================================
# Ordering and versions
# =============================================================================

class TestOrdering:

    @pytest.mark.asyncio
    async def test_start_game_message_order(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        for ws in sockets.values():
            ws.clear()

        await room.start_game("A", sockets["A"])

        for pid, ws in sockets.items():
            assert ws.types() == ["GAME_STARTED", "DICE_ROLLED", "YOUR_HAND", "ROOM_STATE"]
            assert ws.messages_of_type("YOUR_HAND")[0]["dice"] == room.game.get_hand(pid)

    @pytest.mark.asyncio
    async def test_state_snapshot_has_no_hands(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        state = sockets["B"].messages_of_type("ROOM_STATE")[-1]["state"]
        assert all("hand" not in p for p in state["players"])
        assert state["roomCode"] == "ROOM42"

    @pytest.mark.asyncio
    async def test_versions_strictly_increase(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        await room.bid("A", Bid(1, 2), sockets["A"])
        versions = [m["version"] for m in sockets["A"].messages_of_type("ROOM_STATE")]
        assert versions == sorted(versions)
        assert len(set(versions)) == len(versions)
        assert versions[-1] == room.version

    @pytest.mark.asyncio
    async def test_rejected_command_does_not_bump_version(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        version = room.version
        with pytest.raises(ValidationError) as exc:
            await room.bid("B", Bid(1, 2), sockets["B"])
        assert exc.value.code == "NOT_YOUR_TURN"
        assert room.version == version

    @pytest.mark.asyncio
    async def test_concurrent_commands_apply_one_at_a_time(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        version = room.version

        results = await asyncio.gather(
            room.bid("A", Bid(2, 3), sockets["A"]),
            room.bid("A", Bid(2, 4), sockets["A"]),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert errors[0].code == "NOT_YOUR_TURN"
        assert room.version == version + 1
        assert room.game.round.current_bid == Bid(2, 3)

    @pytest.mark.asyncio
    async def test_dudo_broadcasts_call_then_result(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        await room.bid("A", Bid(1, 2), sockets["A"])
        sockets["B"].clear()

        result = await room.dudo("B", sockets["B"])

        assert sockets["B"].types()[:2] == ["DUDO_CALLED", "ROUND_RESULT"]
        payload = sockets["B"].messages_of_type("ROUND_RESULT")[0]
        assert payload["loserId"] == result.loser_id
        assert set(payload["allHands"]) == {"A", "B"}
        assert room.game.phase == GamePhase.ROLLING

    @pytest.mark.asyncio
    async def test_roll_deals_next_round(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        await room.bid("A", Bid(1, 2), sockets["A"])
        await room.dudo("B", sockets["B"])
        sockets["A"].clear()

        await room.roll_dice("A", sockets["A"])

        assert sockets["A"].types() == ["DICE_ROLLED", "YOUR_HAND", "ROOM_STATE"]
        assert room.game.round_number == 2

    @pytest.mark.asyncio
    async def test_game_over_broadcast_and_callback(self):
        room = make_room(settings=GameSettings(starting_dice=1))
        sockets = await seat(room, "A", "B")
        finished = []

        async def on_over(r):
            finished.append(r.game.winner_id)

        room.on_game_over(on_over)
        await room.start_game("A", sockets["A"])
        room.game.get_player("A").hand = [2]
        room.game.get_player("B").hand = [3]
        await room.bid("A", Bid(1, 6), sockets["A"])
        await room.dudo("B", sockets["B"])

        ended = sockets["A"].messages_of_type("GAME_ENDED")
        assert ended[0]["winnerId"] == "B"
        assert finished == ["B"]

        await room.return_to_lobby("A", sockets["A"])
        assert room.game.phase == GamePhase.WAITING
        assert sockets["B"].messages_of_type("RETURNED_TO_LOBBY")


# =============================================================================
# Fan-out isolation
# =============================================================================

class TestFanOut:

    @pytest.mark.asyncio
    async def test_broken_socket_does_not_block_others(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        broken = BrokenWebSocket()
        await room.attach("C", "Carmen", broken)

        await room.start_game("A", sockets["A"])

        assert room.game.phase == GamePhase.BIDDING
        assert sockets["B"].messages_of_type("GAME_STARTED")

    @pytest.mark.asyncio
    async def test_slow_socket_times_out(self):
        room = make_room(send_timeout=0.05)
        sockets = await seat(room, "A", "B")
        slow = SlowWebSocket()
        await room.attach("C", "Carmen", slow)

        await asyncio.wait_for(room.emote("A", ":)", sockets["A"]), timeout=1)

        assert sockets["B"].messages_of_type("EMOTE_RECEIVED")
        assert slow.messages == []


# =============================================================================
# Host commands
# =============================================================================

class TestHostCommands:

    @pytest.mark.asyncio
    async def test_kick(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.kick("A", "B", sockets["A"])

        assert "B" not in room.members
        assert sockets["B"].messages_of_type("KICKED")
        left = sockets["A"].messages_of_type("PLAYER_LEFT")[0]
        assert left["playerId"] == "B"
        assert left["reason"] == "kicked"

    @pytest.mark.asyncio
    async def test_non_host_cannot_kick(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        with pytest.raises(AuthorizationError) as exc:
            await room.kick("B", "A", sockets["B"])
        assert exc.value.code == "NOT_HOST"

    @pytest.mark.asyncio
    async def test_cannot_kick_self(self):
        room = make_room()
        sockets = await seat(room, "A")
        with pytest.raises(ValidationError):
            await room.kick("A", "A", sockets["A"])

    @pytest.mark.asyncio
    async def test_kick_unknown(self):
        room = make_room()
        sockets = await seat(room, "A")
        with pytest.raises(NotFoundError) as exc:
            await room.kick("A", "Z", sockets["A"])
        assert exc.value.code == "PLAYER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_update_settings_broadcast(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.update_settings("A", {"startingDice": 3}, sockets["A"])
        updated = sockets["B"].messages_of_type("SETTINGS_UPDATED")[0]
        assert updated["settings"]["startingDice"] == 3

    @pytest.mark.asyncio
    async def test_host_leave_hands_over(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.leave("A", sockets["A"])
        assert sockets["A"].messages_of_type("LEFT_ROOM")
        changed = sockets["B"].messages_of_type("HOST_CHANGED")[0]
        assert changed["hostId"] == "B"
        assert changed["previousHostId"] == "A"


class TestCpuSeats:

    @pytest.mark.asyncio
    async def test_add_and_remove_cpu(self):
        room = make_room()
        sockets = await seat(room, "A")
        cpu_id = await room.add_cpu("A", websocket=sockets["A"])

        assert cpu_id.startswith("cpu_")
        assert room.members[cpu_id].is_cpu
        assert ai.get_profile(cpu_id) is not None
        joined = sockets["A"].messages_of_type("PLAYER_JOINED")[0]
        assert joined["player"]["isCpu"] is True

        removed = await room.remove_cpu("A", websocket=sockets["A"])
        assert removed == cpu_id
        assert ai.get_profile(cpu_id) is None

    @pytest.mark.asyncio
    async def test_cpu_seat_cannot_be_claimed(self):
        room = make_room()
        sockets = await seat(room, "A")
        cpu_id = await room.add_cpu("A", websocket=sockets["A"])
        await room.start_game("A", sockets["A"])
        intruder = MockWebSocket()

        for presented in (None, token(room, cpu_id)):
            with pytest.raises(AuthorizationError) as exc:
                await room.attach(cpu_id, "Mallory", intruder, presented)
            assert exc.value.code == "IMPERSONATION"

        assert intruder.messages_of_type("YOUR_HAND") == []
        assert room.members[cpu_id].websocket is None
        with pytest.raises(AuthorizationError):
            await room.bid(cpu_id, Bid(1, 2), intruder)
        await room.close()

    @pytest.mark.asyncio
    async def test_specific_profile_once_per_room(self):
        room = make_room()
        sockets = await seat(room, "A")
        await room.add_cpu("A", "El Tahúr", sockets["A"])
        with pytest.raises(ValidationError) as exc:
            await room.add_cpu("A", "El Tahúr", sockets["A"])
        assert exc.value.code == "PROFILE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_add_cpu_room_full(self):
        room = make_room(settings=GameSettings(max_players=2))
        sockets = await seat(room, "A", "B")
        with pytest.raises(CapacityError) as exc:
            await room.add_cpu("A", websocket=sockets["A"])
        assert exc.value.code == "ROOM_FULL"
        assert ai._room_used_profiles.get("ROOM42") is None

    @pytest.mark.asyncio
    async def test_cpu_style_in_snapshot(self):
        room = make_room()
        await seat(room, "A")
        cpu_id = await room.add_cpu("A")
        cpu = next(p for p in room.snapshot()["players"] if p["id"] == cpu_id)
        assert cpu["style"] == ai.get_profile(cpu_id).style

    @pytest.mark.asyncio
    async def test_cpu_takes_its_turn(self, monkeypatch):
        monkeypatch.setattr(config, "CPU_THINK_MIN_SECONDS", 0.0)
        monkeypatch.setattr(config, "CPU_THINK_MAX_SECONDS", 0.0)
        monkeypatch.setitem(ai.CPU_TIMING, "pre_roll", (0.0, 0.0))

        room = make_room(cpu_enabled=True)
        sockets = await seat(room, "A")
        cpu_id = await room.add_cpu("A", websocket=sockets["A"])
        await room.start_game("A", sockets["A"])
        await room.bid("A", Bid(1, 2), sockets["A"])

        cpu_moves = []
        for _ in range(100):
            cpu_moves = [
                m for m in sockets["A"].messages
                if m["type"] in ("BID_PLACED", "DUDO_CALLED", "CALZA_CALLED")
                and m["playerId"] == cpu_id
            ]
            if cpu_moves:
                break
            await asyncio.sleep(0.01)

        assert cpu_moves
        await room.close()


# =============================================================================
# Emotes and spectators
# =============================================================================

class TestEmotes:

    @pytest.mark.asyncio
    async def test_emote_does_not_bump_version(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        version = room.version
        await room.emote("A", " 🎲 ", sockets["A"])
        received = sockets["B"].messages_of_type("EMOTE_RECEIVED")[0]
        assert received["emote"] == "🎲"
        assert received["playerId"] == "A"
        assert room.version == version

    @pytest.mark.asyncio
    @pytest.mark.parametrize("emote", ["", "   ", "toolong"])
    async def test_invalid_emote(self, emote):
        room = make_room()
        sockets = await seat(room, "A")
        with pytest.raises(ValidationError) as exc:
            await room.emote("A", emote, sockets["A"])
        assert exc.value.code == "INVALID_EMOTE"


class TestSpectators:

    @pytest.mark.asyncio
    async def test_spectator_gets_public_messages_only(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        watcher = MockWebSocket()
        await room.add_spectator(watcher, "Watcher")

        assert watcher.types() == ["ROOM_JOINED", "ROOM_STATE"]
        assert watcher.messages[0]["spectator"] is True

        await room.start_game("A", sockets["A"])
        assert watcher.messages_of_type("DICE_ROLLED")
        assert watcher.messages_of_type("YOUR_HAND") == []

    @pytest.mark.asyncio
    async def test_spectators_disabled(self):
        room = make_room(settings=GameSettings(allow_spectators=False))
        with pytest.raises(AuthorizationError) as exc:
            await room.add_spectator(MockWebSocket())
        assert exc.value.code == "SPECTATORS_DISABLED"

    @pytest.mark.asyncio
    async def test_close_disconnects_spectators(self):
        room = make_room()
        watcher = MockWebSocket()
        await room.add_spectator(watcher)
        await room.close()
        assert watcher.closed
        with pytest.raises(NotFoundError):
            await room.add_spectator(MockWebSocket())


# =============================================================================
# Timers
# =============================================================================

class TestTimers:

    @pytest.mark.asyncio
    async def test_grace_window_awards_remaining_player(self):
        room = make_room(reconnect_grace=0.05)
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        await room.detach("B", sockets["B"])

        await asyncio.sleep(0.2)

        assert room.game.phase == GamePhase.GAME_OVER
        assert room.game.winner_id == "A"
        assert sockets["A"].messages_of_type("GAME_ENDED")

    @pytest.mark.asyncio
    async def test_reconnect_within_grace_cancels(self):
        room = make_room(reconnect_grace=0.1)
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        await room.detach("B", sockets["B"])
        await room.attach("B", "PlayerB", MockWebSocket(), token(room, "B"))

        await asyncio.sleep(0.2)

        assert room.game.phase == GamePhase.BIDDING
        await room.close()

    @pytest.mark.asyncio
    async def test_room_turn_timer_moves_for_connected_player(self):
        room = make_room(settings=GameSettings(turn_timeout_ms=50))
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        started = room.game.round.to_dict()["turnStartedAt"]
        assert isinstance(started, int) and started > 0

        await asyncio.sleep(0.2)

        timeout = sockets["B"].messages_of_type("TURN_TIMEOUT")[0]
        assert timeout["playerId"] == "A"
        assert timeout["aiAction"] == "bid"
        assert room.game.round.bids[0][0] == "A"
        latest = sockets["B"].messages_of_type("ROOM_STATE")[-1]["state"]["round"]
        assert latest["lastActionWasTimeout"] is True
        await room.close()

    @pytest.mark.asyncio
    async def test_turn_timer_restarts_after_each_move(self):
        room = make_room(settings=GameSettings(turn_timeout_ms=300))
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])

        await asyncio.sleep(0.15)
        await room.bid("A", Bid(1, 2), sockets["A"])
        await asyncio.sleep(0.15)

        assert sockets["A"].messages_of_type("TURN_TIMEOUT") == []
        assert room.game.round.current_turn_player_id == "B"
        assert room.game.round.last_action_was_timeout is False
        await room.close()

    @pytest.mark.asyncio
    async def test_no_turn_timer_by_default(self):
        room = make_room()
        sockets = await seat(room, "A", "B")
        await room.start_game("A", sockets["A"])
        await asyncio.sleep(0.1)
        assert room._turn_timer_task is None
        assert sockets["A"].messages_of_type("TURN_TIMEOUT") == []
        await room.close()

    @pytest.mark.asyncio
    async def test_absent_turn_holder_auto_moves(self):
        room = make_room(turn_timeout=0.05)
        sockets = await seat(room, "A", "B", "C")
        await room.start_game("A", sockets["A"])
        await room.bid("A", Bid(1, 2), sockets["A"])
        await room.detach("B", sockets["B"])

        await asyncio.sleep(0.2)

        timeout = sockets["A"].messages_of_type("TURN_TIMEOUT")
        assert timeout[0]["playerId"] == "B"
        assert timeout[0]["aiAction"] in ("bid", "dudo")
        assert room.game.round.current_turn_player_id != "B" or room.game.phase != GamePhase.BIDDING
        await room.close()

    @pytest.mark.asyncio
    async def test_no_auto_move_by_default(self):
        room = make_room()
        sockets = await seat(room, "A", "B", "C")
        await room.start_game("A", sockets["A"])
        await room.bid("A", Bid(1, 2), sockets["A"])
        await room.detach("B", sockets["B"])

        await asyncio.sleep(0.05)

        assert sockets["A"].messages_of_type("TURN_TIMEOUT") == []
        assert room.game.round.current_turn_player_id == "B"
        await room.close()


# =============================================================================
# RoomManager
# =============================================================================

class TestRoomManager:

    def test_codes_unique_and_well_formed(self):
        manager = RoomManager(spectators=SpectatorManager(), cpu_enabled=False)
        codes = {manager.create_room().code for _ in range(20)}
        assert len(codes) == 20
        for code in codes:
            assert len(code) == 6
            assert not set(code) & set("01OIL")

    def test_lookup_normalizes_code(self):
        manager = RoomManager(spectators=SpectatorManager(), cpu_enabled=False)
        room = manager.create_room()
        assert manager.get_room(f"  {room.code.lower()} ") is room
        assert manager.require_room(room.code.lower()) is room

    @pytest.mark.parametrize("code", ["", "ABC", "ABCDEFG", "ABCDE0", None])
    def test_require_room_bad_code(self, code):
        manager = RoomManager(spectators=SpectatorManager(), cpu_enabled=False)
        with pytest.raises(NotFoundError) as exc:
            manager.require_room(code)
        assert exc.value.code == "ROOM_NOT_FOUND"

    def test_require_room_unknown(self):
        manager = RoomManager(spectators=SpectatorManager(), cpu_enabled=False)
        with pytest.raises(NotFoundError):
            manager.require_room("ABCDEF")

    @pytest.mark.asyncio
    async def test_cleanup_idle_rooms(self):
        manager = RoomManager(spectators=SpectatorManager(), cpu_enabled=False)
        empty = manager.create_room()
        busy = manager.create_room()
        await busy.attach("A", "Alice", MockWebSocket())

        removed = await manager.cleanup_idle_rooms(60, now=busy.last_activity + 120)

        assert removed == 1
        assert empty.code not in manager.rooms
        assert empty.closed
        assert manager.find_player_room("A") is busy

    @pytest.mark.asyncio
    async def test_removed_room_rejects_commands(self):
        manager = RoomManager(spectators=SpectatorManager(), cpu_enabled=False)
        room = manager.create_room()
        await manager.remove_room(room.code)
        with pytest.raises(NotFoundError):
            await room.attach("A", "Alice", MockWebSocket())
