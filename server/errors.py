"""
Error taxonomy for the Perudo server.

Every rejected command raises one of these before any state is touched, so
a failed command never has a partial effect. Handlers turn them into an
ERROR message sent only to the offending socket.

    ValidationError     malformed or rule-violating command
    AuthorizationError  non-host using a host action, or acting as someone else
    CapacityError       join to a full or already-started room
    NotFoundError       unknown room code or player
    TransientError      a send to one socket failed during fan-out
"""

from typing import Any, Optional


class GameError(Exception):
    """Base class for errors reported back to a client."""

    code = "GAME_ERROR"

    def __init__(self, reason: str, code: Optional[str] = None, **details: Any):
        super().__init__(reason)
        self.reason = reason
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        return {"type": self.code, "reason": self.reason, **self.details}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code}: {self.reason})"


class ValidationError(GameError):
    code = "INVALID_ACTION"


class AuthorizationError(GameError):
    code = "NOT_AUTHORIZED"


class CapacityError(GameError):
    code = "ROOM_FULL"


class NotFoundError(GameError):
    code = "ROOM_NOT_FOUND"


class TransientError(GameError):
    code = "SEND_FAILED"
