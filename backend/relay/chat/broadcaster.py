"""Fan-out delivery of coordinator events to WebSocket connections.

Delivery is fire-and-forget: nothing is buffered or retried. A send that
fails means the peer is gone; the connection is detached and its own
disconnect handler cleans up the session.

Frames are JSON objects of the form ``{"type": <event>, **payload}``.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

from fastapi import WebSocket

from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class Broadcaster(ABC):
    """Delivery interface used by the EventCoordinator."""

    @abstractmethod
    async def emit_to_room(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        """Deliver an event to every connection whose session is in ``room``."""

    @abstractmethod
    async def emit_to_connection(
        self, connection_id: str, event: str, payload: Dict[str, Any]
    ) -> None:
        """Deliver an event to a single connection."""


class WebSocketBroadcaster(Broadcaster):
    """Broadcaster over FastAPI WebSocket connections.

    Room members are resolved through the SessionRegistry at send time, so
    this class only tracks which WebSocket belongs to which connection ID.
    """

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry
        # connection_id -> WebSocket
        self._connections: Dict[str, WebSocket] = {}

    def attach(self, connection_id: str, websocket: WebSocket) -> None:
        self._connections[connection_id] = websocket

    def detach(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    def connection_count(self) -> int:
        return len(self._connections)

    async def emit_to_room(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        targets = [
            session.id for session in self._registry.list_by_room(room)
            if session.id in self._connections
        ]
        if not targets:
            return
        frame = {"type": event, **payload}
        results = await asyncio.gather(
            *[self._safe_send(conn_id, frame) for conn_id in targets],
            return_exceptions=True
        )
        failed = [conn_id for conn_id, ok in zip(targets, results) if ok is not True]
        for conn_id in failed:
            self.detach(conn_id)

    async def emit_to_connection(
        self, connection_id: str, event: str, payload: Dict[str, Any]
    ) -> None:
        if connection_id not in self._connections:
            return
        ok = await self._safe_send(connection_id, {"type": event, **payload})
        if not ok:
            self.detach(connection_id)

    async def _safe_send(self, connection_id: str, frame: Dict[str, Any]) -> bool:
        """Send a frame, returning False instead of raising on failure."""
        websocket = self._connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {connection_id}: {e}")
            return False
