"""Per-room state: bounded message history, typing indicators, message index.

Every room gets a RoomState the first time it is referenced (a preset room
or any ad-hoc name a client sends). Rooms are never destroyed while the
process runs.

History is a strict FIFO capped at ``history_limit`` messages. Eviction is
the only way a message leaves a room, and it removes the message's
MessageIndex entry in the same call, so the index never points at a
message that is no longer in history.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .schemas import Message, parse_timestamp_ms

logger = logging.getLogger(__name__)

# Default cap on messages kept per room
DEFAULT_HISTORY_LIMIT = 200


@dataclass
class IndexEntry:
    room: str
    message: Message


class MessageIndex:
    """Global message ID -> (room, message) lookup for read receipts."""

    def __init__(self) -> None:
        self._entries: Dict[int, IndexEntry] = {}

    def put(self, message_id: int, room: str, message: Message) -> None:
        self._entries[message_id] = IndexEntry(room=room, message=message)

    def get(self, message_id: int) -> Optional[IndexEntry]:
        return self._entries.get(message_id)

    def remove(self, message_id: int) -> None:
        self._entries.pop(message_id, None)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._entries


@dataclass
class RoomState:
    # Oldest first
    messages: List[Message] = field(default_factory=list)
    # connection_id -> username
    typing: Dict[str, str] = field(default_factory=dict)


class RoomStateStore:
    """Owns the RoomState of every room plus the shared MessageIndex."""

    def __init__(
        self,
        index: Optional[MessageIndex] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        preset_rooms: Iterable[str] = (),
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self.index = index if index is not None else MessageIndex()
        self.history_limit = history_limit
        self._rooms: Dict[str, RoomState] = {}
        for room in preset_rooms:
            self.ensure(room)

    def ensure(self, room: str) -> RoomState:
        """Return the room's state, creating empty state on first use."""
        state = self._rooms.get(room)
        if state is None:
            state = RoomState()
            self._rooms[room] = state
            logger.debug("[Rooms] Initialised state for room %s", room)
        return state

    def rooms(self) -> List[str]:
        return list(self._rooms)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def append_message(self, room: str, message: Message) -> Message:
        """Append to history and index, evicting the oldest past the cap."""
        state = self.ensure(room)
        state.messages.append(message)
        self.index.put(message.id, room, message)

        while len(state.messages) > self.history_limit:
            evicted = state.messages.pop(0)
            self.index.remove(evicted.id)
            logger.debug("[Rooms] Evicted message %s from room %s", evicted.id, room)
        return message

    def discard_message(self, room: str, message_id: int) -> None:
        """Drop a message from history and the index (undo of append_message)."""
        state = self.ensure(room)
        state.messages = [m for m in state.messages if m.id != message_id]
        self.index.remove(message_id)

    def history(self, room: str) -> List[Message]:
        return list(self.ensure(room).messages)

    def message_count(self, room: str) -> int:
        return len(self.ensure(room).messages)

    def _pool(self, room: str, before: Any = None) -> List[Message]:
        """History filtered to messages strictly older than the cursor.

        An unparseable cursor is treated as no cursor.
        """
        messages = self.ensure(room).messages
        cursor = parse_timestamp_ms(before) if before is not None else None
        if cursor is None:
            return list(messages)
        return [
            msg for msg in messages
            if (parse_timestamp_ms(msg.timestamp) or 0) < cursor
        ]

    def recent_messages(self, room: str, limit: int, before: Any = None) -> List[Message]:
        """The ``limit`` newest messages older than ``before``, oldest first."""
        if limit <= 0:
            return []
        return self._pool(room, before)[-limit:]

    def has_more_before(self, room: str, limit: int, before: Any = None) -> bool:
        """True if a page of ``limit`` leaves older messages behind it."""
        return len(self._pool(room, before)) > max(limit, 0)

    # -------------------------------------------------------------------------
    # Typing indicators
    # -------------------------------------------------------------------------

    def set_typing(self, room: str, connection_id: str, username: str) -> None:
        self.ensure(room).typing[connection_id] = username

    def clear_typing(self, room: str, connection_id: str) -> None:
        self.ensure(room).typing.pop(connection_id, None)

    def clear_typing_everywhere(self, connection_id: str) -> List[str]:
        """Clear a connection's typing entry in every room.

        Returns the rooms whose typing list changed.
        """
        changed = []
        for room, state in self._rooms.items():
            if state.typing.pop(connection_id, None) is not None:
                changed.append(room)
        return changed

    def typing_list(self, room: str) -> List[str]:
        return list(self.ensure(room).typing.values())
