"""Event coordinator for the room-based chat relay.

The coordinator is the single in-process authority over chat state. It owns
the SessionRegistry, the RoomStateStore (with its MessageIndex), a
Broadcaster for delivery and a PersistenceBridge for the durable mirror.

Connection state machine:
    Unjoined --join--> Joined(room)
    Joined(a) --switch_room--> Joined(b)
    Joined(*) --disconnect--> gone

Concurrency:
    Every inbound event runs under one asyncio.Lock, so the mutations of one
    event and the emissions they cause complete before the next event is
    handled. This keeps the three stores consistent and preserves the order
    of events within a room. Storage writes run as background tasks outside
    the lock; history reads only await storage after releasing it.

Error policy:
    Malformed input and unknown targets are ignored. A failure while
    sending a message is reported to the sender only with an "error" event.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from .broadcaster import Broadcaster
from .registry import SessionRegistry
from .rooms import DEFAULT_HISTORY_LIMIT, MessageIndex, RoomStateStore
from .schemas import (
    ANONYMOUS_SENDER,
    PRIVATE_ROOM,
    JoinPayload,
    Message,
    MessageIdGenerator,
    MessageReadPayload,
    PrivateMessagePayload,
    SendMessagePayload,
    Session,
    SwitchRoomPayload,
    TypingPayload,
    coerce_message_id,
    utc_now_iso,
)
from relay.persistence.bridge import PersistenceBridge

logger = logging.getLogger(__name__)

# Messages included in the room snapshot sent on join/switch
SNAPSHOT_SIZE = 25

# Default page size for message history requests
DEFAULT_PAGE_SIZE = 25

SEND_FAILED = "Failed to send message"


# =============================================================================
# Outbound event names
# =============================================================================

ROOM_LIST = "room_list"
ROOM_JOINED = "room_joined"
USER_JOINED = "user_joined"
USER_LEFT = "user_left"
USER_LIST = "user_list"
TYPING_USERS = "typing_users"
RECEIVE_MESSAGE = "receive_message"
PRIVATE_MESSAGE = "private_message"
MESSAGE_READ = "message_read"
ERROR = "error"


class EventCoordinator:
    """Drives join/switch/send/typing/read/disconnect against shared state."""

    def __init__(
        self,
        broadcaster: Broadcaster,
        registry: Optional[SessionRegistry] = None,
        rooms: Optional[RoomStateStore] = None,
        persistence: Optional[PersistenceBridge] = None,
        *,
        default_room: str = "general",
        preset_rooms: Iterable[str] = ("general",),
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.broadcaster = broadcaster
        self.registry = registry if registry is not None else SessionRegistry()
        self.preset_rooms: List[str] = list(preset_rooms)
        self.rooms = rooms if rooms is not None else RoomStateStore(
            MessageIndex(), history_limit=history_limit, preset_rooms=self.preset_rooms
        )
        self.persistence = persistence if persistence is not None else PersistenceBridge()
        self.default_room = default_room
        self.page_size = page_size
        self.max_page_size = max_page_size
        self._ids = MessageIdGenerator()
        self._lock = asyncio.Lock()

        for room in self.preset_rooms:
            self.rooms.ensure(room)

    @property
    def index(self) -> MessageIndex:
        return self.rooms.index

    def resolve_room(self, room: Optional[str]) -> str:
        """Trimmed room name; blank or missing names map to the default room."""
        if isinstance(room, str) and room.strip():
            return room.strip()
        return self.default_room

    @staticmethod
    def _explicit_room(room: Optional[str]) -> Optional[str]:
        """Trimmed room name, or None when the payload names no room."""
        if isinstance(room, str) and room.strip():
            return room.strip()
        return None

    # =========================================================================
    # Snapshots
    # =========================================================================

    def _users(self, room: str) -> List[dict]:
        return [s.model_dump() for s in self.registry.list_by_room(room)]

    def _room_snapshot(self, room: str) -> Dict[str, Any]:
        messages = self.rooms.recent_messages(room, SNAPSHOT_SIZE)
        return {
            "room": room,
            "users": self._users(room),
            "messages": [m.model_dump() for m in messages],
            "hasMore": self.rooms.has_more_before(room, SNAPSHOT_SIZE),
        }

    async def _emit_user_list(self, room: str) -> None:
        await self.broadcaster.emit_to_room(
            room, USER_LIST, {"room": room, "users": self._users(room)}
        )

    async def _emit_typing_users(self, room: str) -> None:
        await self.broadcaster.emit_to_room(
            room, TYPING_USERS, {"room": room, "users": self.rooms.typing_list(room)}
        )

    async def _clear_typing(self, connection_id: str, room: str) -> None:
        """Drop the connection's typing entries and refresh ``room`` plus every room that changed."""
        changed = self.rooms.clear_typing_everywhere(connection_id)
        await self._emit_typing_users(room)
        for other in changed:
            if other != room:
                await self._emit_typing_users(other)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, connection_id: str) -> None:
        """Send the preset room list to a freshly opened connection."""
        await self.broadcaster.emit_to_connection(
            connection_id, ROOM_LIST, {"rooms": list(self.preset_rooms)}
        )

    async def join(self, connection_id: str, payload: JoinPayload) -> Session:
        """Register (or re-register) a connection's session in a room."""
        async with self._lock:
            target = self.resolve_room(payload.room)
            self.rooms.ensure(target)

            previous = self.registry.get(connection_id)
            session = self.registry.register(connection_id, payload.username, target)

            # A re-join into another room leaves the old one
            if previous is not None and previous.room != target:
                await self._clear_typing(connection_id, previous.room)
                await self._emit_user_list(previous.room)

            await self._emit_user_list(target)
            await self.broadcaster.emit_to_room(
                target, USER_JOINED,
                {"username": session.username, "id": connection_id, "room": target}
            )
            await self.broadcaster.emit_to_connection(
                connection_id, ROOM_JOINED, self._room_snapshot(target)
            )
            logger.info(f"[Chat] {session.username} joined the chat in {target}")
            return session

    async def switch_room(self, connection_id: str, payload: SwitchRoomPayload) -> None:
        """Move a joined connection to another room."""
        async with self._lock:
            session = self.registry.get(connection_id)
            if session is None:
                return

            target = self.resolve_room(payload.room)
            if session.room == target:
                return

            previous = session.room
            self.rooms.ensure(target)

            await self._clear_typing(connection_id, previous)

            await self.broadcaster.emit_to_room(
                previous, USER_LEFT,
                {"username": session.username, "id": connection_id, "room": previous}
            )

            self.registry.update_room(connection_id, target)

            await self._emit_user_list(previous)
            await self._emit_user_list(target)

            await self.broadcaster.emit_to_room(
                target, USER_JOINED,
                {"username": session.username, "id": connection_id, "room": target}
            )
            await self.broadcaster.emit_to_connection(
                connection_id, ROOM_JOINED, self._room_snapshot(target)
            )
            logger.info(f"[Chat] {session.username} switched from {previous} to {target}")

    async def disconnect(self, connection_id: str) -> None:
        """Tear down a connection's session; safe for connections that never joined."""
        async with self._lock:
            session = self.registry.get(connection_id)
            if session is None:
                return

            room = session.room

            await self.broadcaster.emit_to_room(
                room, USER_LEFT,
                {"username": session.username, "id": connection_id, "room": room}
            )
            logger.info(f"[Chat] {session.username} left the chat")

            await self._clear_typing(connection_id, room)

            self.registry.remove(connection_id)

            await self._emit_user_list(room)

    # =========================================================================
    # Messaging
    # =========================================================================

    async def send_message(self, connection_id: str, fields: Dict[str, Any]) -> Optional[Message]:
        """Commit a room message and broadcast it.

        Returns the committed message, or None when the send failed (the
        sender then receives an "error" event and the room is left as it
        was before the send).
        """
        async with self._lock:
            message: Optional[Message] = None
            mirror = None
            try:
                payload = SendMessagePayload.model_validate(fields)
                session = self.registry.get(connection_id)
                room = self.resolve_room(
                    self._explicit_room(payload.room) or (session.room if session else None)
                )
                message = Message(
                    id=self._ids.next_id(),
                    room=room,
                    sender=session.username if session else ANONYMOUS_SENDER,
                    senderId=connection_id,
                    message=payload.message,
                    file=payload.file,
                    timestamp=utc_now_iso(),
                )
                self.rooms.append_message(room, message)
                mirror = self.persistence.schedule_mirror(message)
                await self.broadcaster.emit_to_room(room, RECEIVE_MESSAGE, message.model_dump())
                return message
            except Exception as e:
                logger.error(f"[Chat] Error handling message from {connection_id}: {e}")
                if message is not None:
                    self.rooms.discard_message(message.room, message.id)
                    if mirror is not None:
                        self.persistence.schedule_discard(message.id)
                await self.broadcaster.emit_to_connection(
                    connection_id, ERROR, {"message": SEND_FAILED}
                )
                return None

    async def typing(self, connection_id: str, payload: TypingPayload) -> None:
        """Set or clear this connection's typing indicator."""
        async with self._lock:
            session = self.registry.get(connection_id)
            if session is None:
                return

            room = self._explicit_room(payload.room) or session.room
            if payload.isTyping:
                self.rooms.set_typing(room, connection_id, session.username)
            else:
                self.rooms.clear_typing(room, connection_id)

            await self._emit_typing_users(room)

    async def private_message(
        self, connection_id: str, payload: PrivateMessagePayload
    ) -> Message:
        """Deliver a direct message to its target and echo it to the sender.

        Private messages are ephemeral: they are neither stored in room
        history nor indexed for read receipts.
        """
        async with self._lock:
            session = self.registry.get(connection_id)
            message = Message(
                id=self._ids.next_id(),
                room=PRIVATE_ROOM,
                sender=session.username if session else ANONYMOUS_SENDER,
                senderId=connection_id,
                message=payload.message,
                timestamp=utc_now_iso(),
                isPrivate=True,
            )
            data = message.model_dump()
            if payload.to != connection_id:
                await self.broadcaster.emit_to_connection(payload.to, PRIVATE_MESSAGE, data)
            await self.broadcaster.emit_to_connection(connection_id, PRIVATE_MESSAGE, data)
            return message

    async def message_read(self, connection_id: str, payload: MessageReadPayload) -> bool:
        """Record a read receipt. Returns True if a new reader was added."""
        async with self._lock:
            message_id = coerce_message_id(payload.messageId)
            entry = self.index.get(message_id) if message_id is not None else None
            if entry is None:
                return False

            message = entry.message
            if not message.mark_read(connection_id):
                return False

            room = self._explicit_room(payload.room) or entry.room
            receipt = {"messageId": message.id, "readerId": connection_id, "room": room}

            await self.broadcaster.emit_to_room(room, MESSAGE_READ, receipt)
            if message.senderId:
                await self.broadcaster.emit_to_connection(message.senderId, MESSAGE_READ, receipt)

            self.persistence.schedule_mirror(message)
            return True

    # =========================================================================
    # Read model (HTTP API)
    # =========================================================================

    async def list_messages(
        self,
        room: Optional[str] = None,
        before: Any = None,
        limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """A page of history strictly older than ``before``, oldest first.

        When memory has nothing for the page, durable storage is consulted.
        """
        room = self.resolve_room(room)
        limit = self.page_size if limit is None else limit
        limit = max(1, min(limit, self.max_page_size))

        async with self._lock:
            self.rooms.ensure(room)
            messages = self.rooms.recent_messages(room, limit, before)
            has_more = self.rooms.has_more_before(room, limit, before)

        if messages:
            return {
                "room": room,
                "messages": [m.model_dump() for m in messages],
                "hasMore": has_more,
            }

        # One extra row tells us whether storage holds an older page
        stored = await self.persistence.backfill(room, before, limit + 1)
        return {
            "room": room,
            "messages": [m.model_dump() for m in stored[-limit:]],
            "hasMore": len(stored) > limit,
        }

    def list_rooms(self) -> Dict[str, Any]:
        return {"rooms": list(self.preset_rooms), "defaultRoom": self.default_room}

    def list_active_users(self) -> List[Session]:
        return self.registry.list_all()


# =============================================================================
# Application-wide coordinator
# =============================================================================

_coordinator: Optional[EventCoordinator] = None


def get_coordinator() -> Optional[EventCoordinator]:
    """Return the application's EventCoordinator, or None before startup."""
    return _coordinator


def set_coordinator(coordinator: Optional[EventCoordinator]) -> None:
    """Set (or clear) the application's EventCoordinator."""
    global _coordinator
    _coordinator = coordinator
