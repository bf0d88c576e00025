"""WebSocket message handlers for the Perudo server.

Each handler corresponds to a single client message type. Handlers are
dispatched via the HANDLERS dict by dispatch_message, which also turns any
GameError into an ERROR message for the offending socket only.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import WebSocket

from errors import AuthorizationError, GameError
from logging_config import player_id_var, room_code_var
from protocol import (
    AddCpuMessage,
    BidMessage,
    CalzaMessage,
    CreateRoomMessage,
    DudoMessage,
    GauntletNextMessage,
    JoinMessage,
    KickPlayerMessage,
    LeaveMessage,
    RemoveCpuMessage,
    ReturnToLobbyMessage,
    RollDiceMessage,
    SendEmoteMessage,
    StartGameMessage,
    StartGauntletMessage,
    UpdateSettingsMessage,
    error_message,
    parse_client_message,
)
from room import Room

logger = logging.getLogger(__name__)


@dataclass
class ConnectionContext:
    """State tracked per WebSocket connection."""

    websocket: WebSocket
    connection_id: str
    client_id: str
    current_room: Optional[Room] = None
    is_spectator: bool = False


def _seated_room(ctx: ConnectionContext) -> Room:
    """The room this socket acts in; spectators and strangers are refused."""
    if ctx.current_room is None:
        raise AuthorizationError("Join a room first", "NOT_IN_ROOM")
    if ctx.is_spectator:
        raise AuthorizationError("Spectators cannot act", "NOT_IN_ROOM")
    return ctx.current_room


# ---------------------------------------------------------------------------
# Lobby / Room handlers
# ---------------------------------------------------------------------------

async def handle_create_room(msg: CreateRoomMessage, ctx: ConnectionContext, *, connections, **kw) -> None:
    await connections.create_room(ctx, msg.player_name, msg.settings)


async def handle_join(msg: JoinMessage, ctx: ConnectionContext, *, connections, **kw) -> None:
    await connections.join(
        ctx,
        msg.room_code,
        msg.player_name,
        spectate=msg.spectate,
        reconnect_token=msg.reconnect_token,
    )


async def handle_leave(msg: LeaveMessage, ctx: ConnectionContext, *, connections, **kw) -> None:
    await connections.leave(ctx)


async def handle_kick_player(msg: KickPlayerMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    await room.kick(ctx.client_id, msg.player_id, ctx.websocket)


async def handle_update_settings(msg: UpdateSettingsMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    await room.update_settings(ctx.client_id, msg.settings, ctx.websocket)


async def handle_add_cpu(msg: AddCpuMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    await room.add_cpu(ctx.client_id, msg.profile_name, ctx.websocket)


async def handle_remove_cpu(msg: RemoveCpuMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    await room.remove_cpu(ctx.client_id, msg.player_id, ctx.websocket)


async def handle_send_emote(msg: SendEmoteMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    await room.emote(ctx.client_id, msg.emote, ctx.websocket)


# ---------------------------------------------------------------------------
# Game handlers
# ---------------------------------------------------------------------------

async def handle_start_game(msg: StartGameMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    await room.start_game(ctx.client_id, ctx.websocket)


async def handle_roll_dice(msg: RollDiceMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    msg.check_actor(ctx.client_id)
    await room.roll_dice(ctx.client_id, ctx.websocket)


async def handle_bid(msg: BidMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    msg.check_actor(ctx.client_id)
    await room.bid(ctx.client_id, msg.bid.to_bid(), ctx.websocket)


async def handle_dudo(msg: DudoMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    msg.check_actor(ctx.client_id)
    await room.dudo(ctx.client_id, ctx.websocket)


async def handle_calza(msg: CalzaMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    msg.check_actor(ctx.client_id)
    await room.calza(ctx.client_id, ctx.websocket)


async def handle_return_to_lobby(msg: ReturnToLobbyMessage, ctx: ConnectionContext, **kw) -> None:
    room = _seated_room(ctx)
    await room.return_to_lobby(ctx.client_id, ctx.websocket)


# ---------------------------------------------------------------------------
# Gauntlet handlers
# ---------------------------------------------------------------------------

async def handle_start_gauntlet(msg: StartGauntletMessage, ctx: ConnectionContext, *, connections, gauntlet, **kw) -> None:
    run = gauntlet.get_run(ctx.client_id)
    duel_room = run.room_code if run else None
    seated = connections.seated_room(ctx)
    if seated is not None and seated.code != duel_room:
        connections.check_free(ctx)
    await gauntlet.start(ctx, msg.player_name)


async def handle_gauntlet_next(msg: GauntletNextMessage, ctx: ConnectionContext, *, gauntlet, **kw) -> None:
    await gauntlet.next_duel(ctx)


# ---------------------------------------------------------------------------
# Handler dispatch table
# ---------------------------------------------------------------------------

HANDLERS = {
    "CREATE_ROOM": handle_create_room,
    "JOIN": handle_join,
    "LEAVE": handle_leave,
    "KICK_PLAYER": handle_kick_player,
    "UPDATE_SETTINGS": handle_update_settings,
    "START_GAME": handle_start_game,
    "ROLL_DICE": handle_roll_dice,
    "BID": handle_bid,
    "DUDO": handle_dudo,
    "CALZA": handle_calza,
    "ADD_CPU": handle_add_cpu,
    "REMOVE_CPU": handle_remove_cpu,
    "RETURN_TO_LOBBY": handle_return_to_lobby,
    "SEND_EMOTE": handle_send_emote,
    "START_GAUNTLET": handle_start_gauntlet,
    "GAUNTLET_NEXT": handle_gauntlet_next,
}


async def _send_error(ctx: ConnectionContext, error: GameError) -> None:
    try:
        await ctx.websocket.send_json(error_message(error))
    except Exception as e:
        logger.debug(f"Could not deliver error to {ctx.connection_id}: {e}")


async def dispatch_message(raw: Any, ctx: ConnectionContext, **deps) -> None:
    """
    Parse one client message and run its handler.

    Rejections go back to this socket only. Unexpected failures are logged
    with a traceback and reported as INTERNAL_ERROR; the socket stays open.
    """
    room_token = room_code_var.set(ctx.current_room.code if ctx.current_room else None)
    player_token = player_id_var.set(ctx.client_id)
    msg_type = raw.get("type") if isinstance(raw, dict) else None
    try:
        msg = parse_client_message(raw)
        msg_type = msg.type
        await HANDLERS[msg.type](msg, ctx, **deps)
    except AuthorizationError as e:
        logger.warning(f"Rejected {msg_type} from {ctx.client_id}: {e.code} {e.reason}")
        await _send_error(ctx, e)
    except GameError as e:
        logger.info(f"Rejected {msg_type} from {ctx.client_id}: {e.code} {e.reason}")
        await _send_error(ctx, e)
    except Exception:
        logger.exception(f"Unhandled error processing {msg_type} from {ctx.client_id}")
        await _send_error(ctx, GameError("Internal server error", "INTERNAL_ERROR"))
    finally:
        room_code_var.reset(room_token)
        player_id_var.reset(player_token)
