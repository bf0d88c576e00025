"""
Wire protocol for the Perudo WebSocket API.

Client messages are JSON objects discriminated by `type`. Field names are
accepted in camelCase or snake_case and unknown fields are ignored, so older
and newer clients can talk to the same server. Every server message carries
a millisecond `timestamp`; room snapshots also carry the room's state
`version` so a client can drop snapshots older than one it already applied.

Room codes are 6 characters from an alphabet without look-alike characters
and are normalized (trimmed, uppercased) before lookup.
"""

import json
import random
import re
import secrets
import time
import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from constants import PROTOCOL_VERSION, ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH
from errors import AuthorizationError, ValidationError
from rules import Bid


# =============================================================================
# Client -> server
# =============================================================================

class ClientMessage(BaseModel):
    """Fields shared by every client command."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    timestamp: Optional[int] = None
    protocol_version: Optional[int] = None


class ActingMessage(ClientMessage):
    """
    A game command that may name the acting player.

    The server always acts as the socket's own identity; a mismatching
    player_id is an impersonation attempt and is rejected.
    """

    player_id: Optional[str] = None

    def check_actor(self, identity: str) -> None:
        if self.player_id is not None and self.player_id != identity:
            raise AuthorizationError("Cannot act on behalf of another player", "IMPERSONATION")


class CreateRoomMessage(ClientMessage):
    type: Literal["CREATE_ROOM"]
    player_name: str
    settings: dict = Field(default_factory=dict)


class JoinMessage(ClientMessage):
    type: Literal["JOIN"]
    room_code: str
    player_name: str = ""
    spectate: bool = False
    reconnect_token: Optional[str] = None


class LeaveMessage(ClientMessage):
    type: Literal["LEAVE"]


class KickPlayerMessage(ClientMessage):
    type: Literal["KICK_PLAYER"]
    player_id: str


class UpdateSettingsMessage(ClientMessage):
    type: Literal["UPDATE_SETTINGS"]
    settings: dict


class StartGameMessage(ClientMessage):
    type: Literal["START_GAME"]


class RollDiceMessage(ActingMessage):
    type: Literal["ROLL_DICE"]


class BidPayload(BaseModel):
    # Range checks belong to the rules so the client gets INVALID_BID
    count: StrictInt
    value: StrictInt

    def to_bid(self) -> Bid:
        return Bid(count=self.count, value=self.value)


class BidMessage(ActingMessage):
    type: Literal["BID"]
    bid: BidPayload


class DudoMessage(ActingMessage):
    type: Literal["DUDO"]


class CalzaMessage(ActingMessage):
    type: Literal["CALZA"]


class AddCpuMessage(ClientMessage):
    type: Literal["ADD_CPU"]
    profile_name: Optional[str] = None


class RemoveCpuMessage(ClientMessage):
    type: Literal["REMOVE_CPU"]
    player_id: Optional[str] = None


class ReturnToLobbyMessage(ClientMessage):
    type: Literal["RETURN_TO_LOBBY"]


class SendEmoteMessage(ClientMessage):
    type: Literal["SEND_EMOTE"]
    emote: str


class StartGauntletMessage(ClientMessage):
    type: Literal["START_GAUNTLET"]
    player_name: str


class GauntletNextMessage(ClientMessage):
    type: Literal["GAUNTLET_NEXT"]


AnyClientMessage = Annotated[
    Union[
        CreateRoomMessage,
        JoinMessage,
        LeaveMessage,
        KickPlayerMessage,
        UpdateSettingsMessage,
        StartGameMessage,
        RollDiceMessage,
        BidMessage,
        DudoMessage,
        CalzaMessage,
        AddCpuMessage,
        RemoveCpuMessage,
        ReturnToLobbyMessage,
        SendEmoteMessage,
        StartGauntletMessage,
        GauntletNextMessage,
    ],
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter = TypeAdapter(AnyClientMessage)


def parse_client_message(raw: Any) -> ClientMessage:
    """
    Decode and validate one client message.

    Args:
        raw: A JSON string/bytes or an already-decoded dict.

    Returns:
        The typed message model.

    Raises:
        ValidationError: INVALID_MESSAGE or UNSUPPORTED_VERSION.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ValidationError("Message is not valid JSON", "INVALID_MESSAGE") from e

    if not isinstance(raw, dict):
        raise ValidationError("Message must be a JSON object", "INVALID_MESSAGE")

    version = raw.get("protocolVersion", raw.get("protocol_version"))
    if version is not None and version != PROTOCOL_VERSION:
        raise ValidationError(
            f"Unsupported protocol version {version}",
            "UNSUPPORTED_VERSION",
            supportedVersion=PROTOCOL_VERSION,
        )

    try:
        return _client_adapter.validate_python(raw)
    except PydanticValidationError as e:
        problems = [
            ".".join(str(part) for part in err["loc"]) or err["type"]
            for err in e.errors()
        ]
        raise ValidationError(
            f"Malformed {raw.get('type', 'unknown')} message",
            "INVALID_MESSAGE",
            fields=problems,
        ) from e


# =============================================================================
# Server -> client
# =============================================================================

class ServerMessageType(str, Enum):
    WELCOME = "WELCOME"
    ROOM_CREATED = "ROOM_CREATED"
    ROOM_JOINED = "ROOM_JOINED"
    ROOM_STATE = "ROOM_STATE"
    YOUR_HAND = "YOUR_HAND"
    PLAYER_JOINED = "PLAYER_JOINED"
    PLAYER_LEFT = "PLAYER_LEFT"
    PLAYER_DISCONNECTED = "PLAYER_DISCONNECTED"
    PLAYER_RECONNECTED = "PLAYER_RECONNECTED"
    HOST_CHANGED = "HOST_CHANGED"
    SETTINGS_UPDATED = "SETTINGS_UPDATED"
    GAME_STARTED = "GAME_STARTED"
    DICE_ROLLED = "DICE_ROLLED"
    BID_PLACED = "BID_PLACED"
    DUDO_CALLED = "DUDO_CALLED"
    CALZA_CALLED = "CALZA_CALLED"
    ROUND_RESULT = "ROUND_RESULT"
    TURN_TIMEOUT = "TURN_TIMEOUT"
    GAME_ENDED = "GAME_ENDED"
    RETURNED_TO_LOBBY = "RETURNED_TO_LOBBY"
    EMOTE_RECEIVED = "EMOTE_RECEIVED"
    KICKED = "KICKED"
    LEFT_ROOM = "LEFT_ROOM"
    GAUNTLET_STATE = "GAUNTLET_STATE"
    ERROR = "ERROR"


def now_ms() -> int:
    return int(time.time() * 1000)


def server_message(message_type: ServerMessageType, **fields: Any) -> dict:
    """Build a server message with its type and timestamp."""
    return {"type": message_type.value, **fields, "timestamp": now_ms()}


def error_message(error) -> dict:
    """ERROR message for a GameError, sent only to the offending socket."""
    return server_message(ServerMessageType.ERROR, error=error.to_dict())


def welcome_message(client_id: str) -> dict:
    return server_message(
        ServerMessageType.WELCOME,
        clientId=client_id,
        protocolVersion=PROTOCOL_VERSION,
    )


# =============================================================================
# Identities and room codes
# =============================================================================

_CLIENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{8,64}$")


def generate_client_id() -> str:
    return uuid.uuid4().hex


def is_valid_client_id(client_id: Optional[str]) -> bool:
    return bool(client_id) and _CLIENT_ID_RE.match(client_id) is not None


def generate_room_code(rng: Optional[random.Random] = None) -> str:
    """A fresh room code; uses the secrets module unless an rng is given."""
    if rng is not None:
        return "".join(rng.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def normalize_room_code(code: Any) -> str:
    if not isinstance(code, str):
        return ""
    return code.strip().upper()


def is_valid_room_code(code: str) -> bool:
    return len(code) == ROOM_CODE_LENGTH and all(c in ROOM_CODE_ALPHABET for c in code)
