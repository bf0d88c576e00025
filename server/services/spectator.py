"""
Spectator manager for Perudo rooms.

Lets spectators watch a room via WebSocket. Spectators receive every public
message the room broadcasts (never a hand) but cannot act.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# Maximum spectators per room to prevent resource exhaustion
MAX_SPECTATORS_PER_ROOM = 50

SPECTATOR_SEND_TIMEOUT = 5.0


@dataclass
class SpectatorInfo:
    """Information about a spectator connection."""
    websocket: WebSocket
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    username: Optional[str] = None


class SpectatorManager:
    """
    Manage spectators watching rooms.

    Membership changes are synchronous so the room can apply them under its
    lock; only the sends are awaited.
    """

    def __init__(self, max_per_room: int = MAX_SPECTATORS_PER_ROOM):
        self.max_per_room = max_per_room
        # room_code -> list of SpectatorInfo
        self._spectators: Dict[str, List[SpectatorInfo]] = {}
        # websocket -> room_code (for reverse lookup on disconnect)
        self._ws_to_room: Dict[WebSocket, str] = {}

    def add_spectator(
        self,
        room_code: str,
        websocket: WebSocket,
        username: Optional[str] = None,
    ) -> bool:
        """
        Add a spectator to a room.

        Returns:
            True if added, False if the room is at its spectator limit.
        """
        spectators = self._spectators.setdefault(room_code, [])
        if any(info.websocket is websocket for info in spectators):
            return True

        if len(spectators) >= self.max_per_room:
            logger.warning(f"Room {room_code} at spectator limit ({self.max_per_room})")
            return False

        spectators.append(SpectatorInfo(websocket=websocket, username=username or "Spectator"))
        self._ws_to_room[websocket] = room_code

        logger.info(f"Spectator joined room {room_code} (total: {len(spectators)})")
        return True

    def remove_spectator(self, room_code: str, websocket: WebSocket) -> None:
        if room_code in self._spectators:
            self._spectators[room_code] = [
                info for info in self._spectators[room_code]
                if info.websocket is not websocket
            ]
            logger.info(
                f"Spectator left room {room_code} (remaining: {len(self._spectators[room_code])})"
            )
            if not self._spectators[room_code]:
                del self._spectators[room_code]

        self._ws_to_room.pop(websocket, None)

    def remove_spectator_by_ws(self, websocket: WebSocket) -> Optional[str]:
        """
        Remove a spectator by socket (for disconnect handling).

        Returns:
            The room code they were watching, if any.
        """
        room_code = self._ws_to_room.get(websocket)
        if room_code:
            self.remove_spectator(room_code, websocket)
        return room_code

    async def broadcast_to_spectators(self, room_code: str, message: dict) -> None:
        """
        Send a message to all spectators of a room.

        Spectators whose socket fails or stalls are dropped.
        """
        if room_code not in self._spectators:
            return

        dead_connections: List[SpectatorInfo] = []

        for info in list(self._spectators[room_code]):
            try:
                await asyncio.wait_for(info.websocket.send_json(message), SPECTATOR_SEND_TIMEOUT)
            except Exception as e:
                logger.debug(f"Failed to send to spectator: {e}")
                dead_connections.append(info)

        for info in dead_connections:
            self.remove_spectator(room_code, info.websocket)

    def get_spectator_count(self, room_code: str) -> int:
        return len(self._spectators.get(room_code, []))

    def get_rooms_with_spectators(self) -> dict[str, int]:
        """Room code -> spectator count, for rooms being watched."""
        return {
            room_code: len(spectators)
            for room_code, spectators in self._spectators.items()
            if spectators
        }

    async def close_all_for_room(self, room_code: str) -> None:
        """Close all spectator connections for a room being cleaned up."""
        if room_code not in self._spectators:
            return

        for info in list(self._spectators[room_code]):
            try:
                await info.websocket.close(code=1000, reason="Room closed")
            except Exception as e:
                logger.debug(f"Closing spectator socket failed: {e}")
            self._ws_to_room.pop(info.websocket, None)

        del self._spectators[room_code]
        logger.info(f"Closed all spectators for room {room_code}")


# Global instance
_spectator_manager: Optional[SpectatorManager] = None


def get_spectator_manager() -> SpectatorManager:
    """Get the global spectator manager instance."""
    global _spectator_manager
    if _spectator_manager is None:
        _spectator_manager = SpectatorManager()
    return _spectator_manager


def close_spectator_manager() -> None:
    """Close the spectator manager."""
    global _spectator_manager
    _spectator_manager = None
