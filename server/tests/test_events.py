"""
Tests for the game event log.

These tests cover:
- GameEvent serialization
- Events emitted by Game mutators, in order
- The room's bounded event buffer
"""

import random

import pytest

from game import Game
from models.events import EventType, GameEvent
from room import Room
from rules import Bid
from services.spectator import SpectatorManager


def collecting_game(*player_ids):
    events = []
    game = Game(rng=random.Random(9))
    game.set_event_emitter(events.append)
    for pid in player_ids:
        game.add_player(pid, f"Player{pid}")
    return game, events


class TestGameEvent:

    def test_round_trip(self):
        event = GameEvent(
            event_type=EventType.BID_PLACED,
            game_id="game-1",
            sequence_num=4,
            player_id="A",
            data={"count": 3, "value": 5},
        )
        again = GameEvent.from_json(event.to_json())
        assert again == event

    def test_dict_shape(self):
        event = GameEvent(event_type=EventType.GAME_ENDED, game_id="g", sequence_num=1)
        d = event.to_dict()
        assert d["event_type"] == "game_ended"
        assert d["player_id"] is None
        assert d["data"] == {}


class TestEmittedEvents:

    def test_no_emitter_is_silent(self):
        game = Game()
        game.add_player("A", "Alice")
        assert game._sequence_num == 0

    def test_lobby_and_start(self):
        game, events = collecting_game("A", "B")
        game.start_game("A")
        types = [e.event_type for e in events]
        assert types == [
            EventType.PLAYER_JOINED,
            EventType.PLAYER_JOINED,
            EventType.GAME_STARTED,
            EventType.ROUND_STARTED,
        ]
        assert [e.sequence_num for e in events] == [1, 2, 3, 4]
        assert all(e.game_id == game.game_id for e in events)

    def test_round_events(self):
        game, events = collecting_game("A", "B")
        game.start_game("A")
        events.clear()

        game.apply_bid("A", Bid(2, 3))
        game.apply_dudo("B")

        types = [e.event_type for e in events]
        assert types == [EventType.BID_PLACED, EventType.DUDO_CALLED, EventType.ROUND_ENDED]
        assert events[0].data["next_player_id"] == "B"
        assert events[1].data["bid"] == {"count": 2, "value": 3}

    def test_hands_never_logged(self):
        game, events = collecting_game("A", "B")
        game.start_game("A")
        round_started = next(e for e in events if e.event_type == EventType.ROUND_STARTED)
        assert round_started.data["dice"] == {"A": 5, "B": 5}
        assert "hands" not in round_started.data

    def test_host_change_logged(self):
        game, events = collecting_game("A", "B")
        game.set_connected("A", False)
        changed = [e for e in events if e.event_type == EventType.HOST_CHANGED]
        assert changed[0].player_id == "B"
        assert changed[0].data["previous_host_id"] == "A"


class TestRoomEventBuffer:

    @pytest.mark.asyncio
    async def test_room_collects_events(self):
        room = Room("EVENTS", spectators=SpectatorManager(), cpu_enabled=False)

        class Socket:
            async def send_json(self, data):
                pass

        await room.attach("A", "Alice", Socket())
        await room.attach("B", "Bruno", Socket())
        assert [e.event_type for e in room.events] == [EventType.PLAYER_JOINED] * 2
