"""
Connection and identity management.

Binds a connection's durable client identity to a room seat. Identity is
the `clientId` the client presents on connect; a JOIN with an identity that
is already seated is a reconnection, not a new player.
"""

import logging
from typing import Optional

from errors import GameError, ValidationError
from game import Game
from protocol import ServerMessageType, server_message
from room import Room, RoomManager, default_settings
from services.spectator import SpectatorManager, get_spectator_manager

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Routes socket lifecycle events to rooms.

    Works on handlers.ConnectionContext objects: reads `client_id` and
    `websocket`, and keeps `current_room`/`is_spectator` up to date.
    """

    def __init__(
        self,
        room_manager: RoomManager,
        spectators: Optional[SpectatorManager] = None,
    ):
        self.room_manager = room_manager
        self.spectators = spectators or get_spectator_manager()

    def seated_room(self, ctx) -> Optional[Room]:
        """The room this connection is seated in, if it still holds a seat."""
        room = ctx.current_room
        if room is None or ctx.is_spectator:
            return None
        if room.closed or ctx.client_id not in room.members:
            return None
        return room

    def check_free(self, ctx, room: Optional[Room] = None) -> None:
        current = self.seated_room(ctx)
        if current is not None and current is not room:
            raise ValidationError(
                f"Already seated in room {current.code}; leave it first", "ALREADY_JOINED"
            )

    async def create_room(self, ctx, player_name: str, settings_changes: Optional[dict] = None) -> Room:
        """Create a room and seat the creator as host."""
        self.check_free(ctx)
        name = Game.validate_name(player_name)
        settings = default_settings().updated(settings_changes or {})

        room = self.room_manager.create_room(settings=settings)
        await ctx.websocket.send_json(server_message(
            ServerMessageType.ROOM_CREATED, roomCode=room.code, playerId=ctx.client_id,
        ))
        try:
            await room.attach(ctx.client_id, name, ctx.websocket)
        except GameError:
            await self.room_manager.remove_room(room.code)
            raise
        self._enter(ctx, room)
        return room

    async def join(
        self,
        ctx,
        room_code: str,
        player_name: str = "",
        spectate: bool = False,
        reconnect_token: Optional[str] = None,
    ) -> Room:
        """
        Seat, reseat (reconnect) or attach as spectator.

        Reseating a known identity needs the reconnect token from its
        first ROOM_JOINED.

        Raises:
            NotFoundError: Malformed or unknown room code.
            CapacityError: Full room, or game in progress with no seat to reclaim.
            AuthorizationError: Known identity without its reconnect token.
        """
        room = self.room_manager.require_room(room_code)

        if spectate:
            self.check_free(ctx)
            self._leave_spectating(ctx)
            ctx.is_spectator = False
            await room.add_spectator(ctx.websocket, player_name or None)
            ctx.current_room = room
            ctx.is_spectator = True
            return room

        self.check_free(ctx, room)
        reconnected = await room.attach(ctx.client_id, player_name, ctx.websocket, reconnect_token)
        self._enter(ctx, room)
        logger.info(
            f"{ctx.client_id} {'reconnected to' if reconnected else 'joined'} room {room.code}"
        )
        return room

    async def leave(self, ctx) -> None:
        """Give up the seat (or stop spectating)."""
        room = ctx.current_room
        if room is None:
            return

        if ctx.is_spectator:
            self._leave_spectating(ctx)
            await ctx.websocket.send_json(server_message(
                ServerMessageType.LEFT_ROOM, roomCode=room.code,
            ))
        else:
            if self.seated_room(ctx) is not None:
                await room.leave(ctx.client_id, ctx.websocket)
            await self._remove_if_abandoned(room)

        ctx.current_room = None
        ctx.is_spectator = False

    async def disconnect(self, ctx) -> None:
        """Socket closed. The seat is kept for a later reconnect."""
        room = ctx.current_room
        if room is None:
            return

        if ctx.is_spectator:
            self._leave_spectating(ctx)
        elif not room.closed:
            try:
                await room.detach(ctx.client_id, ctx.websocket)
            except GameError as e:
                logger.debug(f"Detach from {room.code} skipped: {e.code}")
        ctx.current_room = None
        ctx.is_spectator = False

    def _enter(self, ctx, room: Room) -> None:
        self._leave_spectating(ctx)
        ctx.current_room = room
        ctx.is_spectator = False

    def _leave_spectating(self, ctx) -> None:
        if ctx.is_spectator:
            self.spectators.remove_spectator_by_ws(ctx.websocket)

    async def _remove_if_abandoned(self, room: Room) -> None:
        if room.human_player_count() == 0 and room.code in self.room_manager.rooms:
            await self.room_manager.remove_room(room.code)
