"""Pydantic schemas and payload normalization for the chat relay.

This module defines:
    - Session: the live binding of a connection to a display name and room
    - Message / FileAttachment: the chat message as stored and broadcast
    - Inbound payload models (JoinPayload, SendMessagePayload, ...)
    - normalize_* helpers that map every accepted inbound frame shape
      (including the legacy bare string / bare boolean forms) onto one
      canonical payload before it reaches the coordinator
    - MessageIdGenerator and timestamp helpers

Field names are camelCase because they are sent to the browser client
unchanged.
"""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ANONYMOUS_SENDER = "Anonymous"
PRIVATE_ROOM = "private"


# =============================================================================
# Data Models
# =============================================================================


class Session(BaseModel):
    """One live connection's identity and current room.

    Attributes:
        id: Connection identifier assigned by the transport.
        username: Self-declared display name.
        room: Name of the room the connection is currently in.
    """
    id: str = Field(..., description="Connection ID")
    username: str = Field(..., description="Display name")
    room: str = Field(..., description="Current room name")


class FileAttachment(BaseModel):
    """Inline file attachment carried by a message."""
    name: str = Field(..., description="Original file name")
    type: str = Field(default="application/octet-stream", description="MIME type")
    data: str = Field(..., description="Inline payload (data URL or base64)")


class Message(BaseModel):
    """A chat message in a room's history (or a private message).

    Attributes:
        id: Process-unique, monotonically increasing identifier.
        room: Room the message belongs to ("private" for direct messages).
        sender: Display name of the sender ("Anonymous" if not joined).
        senderId: Connection ID of the sender.
        message: Optional text body.
        file: Optional inline file attachment.
        timestamp: ISO-8601 UTC creation time with millisecond precision.
        readBy: Connection IDs that acknowledged the message (unique).
        isPrivate: True for direct messages.
    """
    id: int = Field(..., description="Unique message ID")
    room: str = Field(..., description="Room name")
    sender: str = Field(default=ANONYMOUS_SENDER, description="Sender display name")
    senderId: str = Field(..., description="Sender connection ID")
    message: Optional[str] = Field(default=None, description="Text body")
    file: Optional[FileAttachment] = Field(default=None, description="File attachment")
    timestamp: str = Field(..., description="ISO-8601 creation time")
    readBy: List[str] = Field(default_factory=list, description="Reader connection IDs")
    isPrivate: bool = Field(default=False, description="Direct message flag")

    def mark_read(self, reader_id: str) -> bool:
        """Add a reader; returns False if the reader was already recorded."""
        if reader_id in self.readBy:
            return False
        self.readBy.append(reader_id)
        return True


# =============================================================================
# Inbound Payloads
# =============================================================================


class JoinPayload(BaseModel):
    username: str
    room: Optional[str] = None


class SwitchRoomPayload(BaseModel):
    room: Optional[str] = None


class SendMessagePayload(BaseModel):
    room: Optional[str] = None
    message: Optional[str] = None
    file: Optional[FileAttachment] = None


class TypingPayload(BaseModel):
    isTyping: bool = False
    room: Optional[str] = None


class PrivateMessagePayload(BaseModel):
    to: str
    message: Optional[str] = None


class MessageReadPayload(BaseModel):
    messageId: Union[int, str]
    room: Optional[str] = None


def _fields(frame: Any) -> dict:
    """Return the payload fields of a frame.

    Fields may be inline (``{"type": "join", "username": "bob"}``) or
    wrapped (``{"type": "join", "data": {...}}``).
    """
    if not isinstance(frame, dict):
        return {}
    data = frame.get("data")
    if isinstance(data, dict):
        return data
    return {k: v for k, v in frame.items() if k not in ("type", "data")}


def _bare(frame: Any) -> Any:
    """Return the legacy bare value of a frame, or None."""
    if isinstance(frame, dict):
        data = frame.get("data")
        return None if isinstance(data, dict) else data
    return frame


def normalize_join(frame: Any) -> Optional[JoinPayload]:
    """Accept ``{username, room?}`` or a bare username string."""
    bare = _bare(frame)
    if isinstance(bare, str):
        fields = {"username": bare}
    else:
        fields = _fields(frame)
    username = fields.get("username")
    if not isinstance(username, str) or not username.strip():
        return None
    room = fields.get("room")
    return JoinPayload(username=username, room=room if isinstance(room, str) else None)


def normalize_switch_room(frame: Any) -> SwitchRoomPayload:
    """Accept ``{room}`` or a bare room name string."""
    bare = _bare(frame)
    room = bare if isinstance(bare, str) else _fields(frame).get("room")
    return SwitchRoomPayload(room=room if isinstance(room, str) else None)


def normalize_send_message(frame: Any) -> dict:
    """Return raw send fields; validation happens inside the guarded send path."""
    return _fields(frame)


def normalize_typing(frame: Any) -> TypingPayload:
    """Accept ``{isTyping, room?}`` or a bare boolean (typing in current room)."""
    bare = _bare(frame)
    if isinstance(bare, bool):
        return TypingPayload(isTyping=bare)
    fields = _fields(frame)
    room = fields.get("room")
    return TypingPayload(
        isTyping=bool(fields.get("isTyping")),
        room=room.strip() if isinstance(room, str) and room.strip() else None,
    )


def normalize_private_message(frame: Any) -> Optional[PrivateMessagePayload]:
    fields = _fields(frame)
    target = fields.get("to")
    if not isinstance(target, str) or not target:
        return None
    body = fields.get("message")
    return PrivateMessagePayload(to=target, message=body if isinstance(body, str) else None)


def normalize_message_read(frame: Any) -> Optional[MessageReadPayload]:
    fields = _fields(frame)
    message_id = fields.get("messageId")
    if isinstance(message_id, bool) or not isinstance(message_id, (int, str)):
        return None
    room = fields.get("room")
    return MessageReadPayload(
        messageId=message_id,
        room=room.strip() if isinstance(room, str) and room.strip() else None,
    )


def coerce_message_id(value: Union[int, str]) -> Optional[int]:
    """Message IDs are ints on the wire but may arrive as numeric strings."""
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# =============================================================================
# Identifiers and Timestamps
# =============================================================================


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a Z suffix."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """Parse a timestamp or cursor into epoch milliseconds.

    Accepts ISO-8601 strings (with or without ``Z``), datetimes, and epoch
    milliseconds as numbers or numeric strings. Returns None for anything
    unparseable instead of raising.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(moment.timestamp() * 1000)
    if isinstance(value, (int, float)):
        try:
            return int(value)
        except (ValueError, OverflowError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        pass
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Ignoring unparseable timestamp cursor: %r", value)
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


class MessageIdGenerator:
    """Wall-clock based message IDs that never repeat.

    IDs are the current time in milliseconds, bumped to ``last + 1`` when
    several messages are created within the same millisecond (or the clock
    steps backwards).
    """

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            self._last = max(int(time.time() * 1000), self._last + 1)
            return self._last
