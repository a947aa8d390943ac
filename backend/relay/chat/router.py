"""Chat router providing the WebSocket relay and HTTP read endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time room chat
    - GET /api/messages: Paginated room history
    - GET /api/rooms: Preset rooms and the default room
    - GET /api/users: Sessions of all joined connections

WebSocket protocol (every frame is a JSON object with a "type"):
    1. Client connects -> server assigns a connection ID
       -> server sends: {type: "room_list", rooms: [...]}
    2. Client sends: {type: "join", username, room?}
       -> room broadcast: user_list, user_joined
       -> client receives: {type: "room_joined", room, users, messages, hasMore}
    3. Client sends: {type: "send_message", room?, message?, file?}
       -> room broadcast: {type: "receive_message", ...message}
    4. Client sends: {type: "typing", isTyping, room?}
       -> room broadcast: {type: "typing_users", room, users}
    5. Client sends: {type: "switch_room", room}
    6. Client sends: {type: "private_message", to, message}
    7. Client sends: {type: "message_read", messageId, room?}
    8. On disconnect -> room broadcast: user_left, typing_users, user_list

Legacy clients may send bare values as {type, data: <value>}: a username
string for "join", a room string for "switch_room" and a boolean for
"typing".
"""
import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .broadcaster import WebSocketBroadcaster
from .coordinator import EventCoordinator, get_coordinator
from .schemas import (
    normalize_join,
    normalize_message_read,
    normalize_private_message,
    normalize_send_message,
    normalize_switch_room,
    normalize_typing,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_coordinator() -> EventCoordinator:
    coordinator = get_coordinator()
    if coordinator is None:
        raise RuntimeError("Chat coordinator is not initialised")
    return coordinator


# =============================================================================
# HTTP read model
# =============================================================================


@router.get("/api/messages")
async def get_messages(
    room: Optional[str] = Query(None, description="Room name (defaults to the default room)"),
    before: Optional[str] = Query(None, description="Cursor: only messages older than this timestamp"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
) -> JSONResponse:
    """Get a page of message history for a room.

    Clients page backwards by passing the timestamp of the oldest message
    they already have as ``before``.

    Example:
        GET /api/messages?room=general&limit=25
        GET /api/messages?room=general&before=2024-05-01T10:00:00.000Z
    """
    try:
        page = await _require_coordinator().list_messages(room, before, limit)
    except Exception as e:
        logger.error(f"Error fetching messages: {e}")
        return JSONResponse({"error": "Failed to fetch messages"}, status_code=500)
    return JSONResponse(page)


@router.get("/api/rooms")
async def get_rooms() -> dict:
    return _require_coordinator().list_rooms()


@router.get("/api/users")
async def get_users() -> list:
    return [s.model_dump() for s in _require_coordinator().list_active_users()]


# =============================================================================
# WebSocket relay
# =============================================================================


async def dispatch(coordinator: EventCoordinator, connection_id: str, frame: Any) -> None:
    """Route one inbound frame to the coordinator.

    Frames that are not objects, carry an unknown type, or fail
    normalization are ignored.
    """
    if not isinstance(frame, dict):
        logger.debug("[WS] Ignoring non-object frame from %s", connection_id)
        return
    event = frame.get("type")

    if event in ("join", "user_join"):
        payload = normalize_join(frame)
        if payload is not None:
            await coordinator.join(connection_id, payload)
    elif event == "switch_room":
        await coordinator.switch_room(connection_id, normalize_switch_room(frame))
    elif event == "send_message":
        await coordinator.send_message(connection_id, normalize_send_message(frame))
    elif event == "typing":
        await coordinator.typing(connection_id, normalize_typing(frame))
    elif event == "private_message":
        payload = normalize_private_message(frame)
        if payload is not None:
            await coordinator.private_message(connection_id, payload)
    elif event == "message_read":
        payload = normalize_message_read(frame)
        if payload is not None:
            await coordinator.message_read(connection_id, payload)
    else:
        logger.debug("[WS] Ignoring unknown event type %r from %s", event, connection_id)


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint handling one client's complete chat lifecycle."""
    coordinator = _require_coordinator()
    broadcaster = coordinator.broadcaster

    await websocket.accept()
    connection_id = str(uuid.uuid4())
    if isinstance(broadcaster, WebSocketBroadcaster):
        broadcaster.attach(connection_id, websocket)
    logger.info(f"[WS] User connected: {connection_id}")

    try:
        await coordinator.connect(connection_id)

        while True:
            try:
                frame = await websocket.receive_json()
            except (ValueError, KeyError, TypeError) as e:
                logger.debug(f"[WS] Malformed frame from {connection_id}: {e}")
                continue
            logger.debug(
                "[WS] %s received: type=%s",
                connection_id,
                frame.get("type", "?") if isinstance(frame, dict) else "?",
            )
            await dispatch(coordinator, connection_id, frame)

    except WebSocketDisconnect:
        logger.info(f"[WS] User disconnected: {connection_id}")
    finally:
        if isinstance(broadcaster, WebSocketBroadcaster):
            broadcaster.detach(connection_id)
        await coordinator.disconnect(connection_id)
