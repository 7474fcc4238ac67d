"""
Error taxonomy shared by the servers, the transports and the session controller.

Every error maps to a wire ``code`` so a server can reply with an
``{"type": "error", ...}`` frame and a client can raise the matching
exception again on its side. ``fatal`` errors force a full client reset.
"""
from typing import Dict, Optional, Type


class GameError(Exception):
    """Base exception for all room and session errors."""

    code = "error"
    fatal = False
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_message(self) -> dict:
        return {"type": "error", "code": self.code, "message": self.message}


class RoomFull(GameError):
    code = "room_full"
    default_message = "Room is full"


class RoomNotFound(GameError):
    code = "room_not_found"
    default_message = "Room not found"


class RoomCodeTaken(GameError):
    code = "room_code_taken"
    default_message = "Room code already in use"


class TooManyRooms(GameError):
    code = "too_many_rooms"
    default_message = "Too many active rooms. Please try again later."


class InvalidMessage(GameError):
    code = "invalid_message"
    default_message = "Invalid message format"


class PermissionDenied(GameError):
    """Microphone or camera access was refused. Gameplay continues."""
    code = "permission_denied"
    default_message = "Could not access microphone"


class PeerUnavailable(GameError):
    code = "peer_unavailable"
    fatal = True
    default_message = "Host is not reachable"


class ConnectionTimeout(GameError):
    code = "connection_timeout"
    default_message = "No answer from the room in time"


class RoomClosed(GameError):
    code = "room_closed"
    fatal = True
    default_message = "The room was closed"


class OpponentLeft(GameError):
    code = "opponent_left"
    fatal = True
    default_message = "Opponent disconnected!"


_BY_CODE: Dict[str, Type[GameError]] = {
    cls.code: cls
    for cls in (RoomFull, RoomNotFound, RoomCodeTaken, TooManyRooms, InvalidMessage,
                PermissionDenied, PeerUnavailable, ConnectionTimeout, RoomClosed,
                OpponentLeft)
}


def error_from_message(message: dict) -> GameError:
    """Rebuild the exception for an ``error`` frame received over the wire."""
    cls = _BY_CODE.get(message.get("code", ""), GameError)
    return cls(message.get("message"))
