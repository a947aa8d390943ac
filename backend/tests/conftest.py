"""Shared test fixtures and configuration for backend tests."""
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from relay.chat.broadcaster import Broadcaster
from relay.chat.coordinator import EventCoordinator
from relay.config import reset_config
from relay.persistence.service import MessageStore

RELAY_ENV_VARS = (
    "PORT",
    "ENVIRONMENT",
    "CLIENT_URL",
    "DEFAULT_ROOM",
    "CHAT_ROOMS",
    "MESSAGE_HISTORY_LIMIT",
    "MESSAGE_DB_PATH",
    "LOG_LEVEL",
)


class RecordingBroadcaster(Broadcaster):
    """Broadcaster that records emissions instead of delivering them.

    Each record is ``(target_kind, target, event, payload)`` where
    ``target_kind`` is ``"room"`` or ``"connection"``.
    """

    def __init__(self) -> None:
        self.events: List[tuple] = []

    async def emit_to_room(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append(("room", room, event, payload))

    async def emit_to_connection(
        self, connection_id: str, event: str, payload: Dict[str, Any]
    ) -> None:
        self.events.append(("connection", connection_id, event, payload))

    def named(self, event: str) -> List[tuple]:
        return [record for record in self.events if record[2] == event]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def coordinator(broadcaster):
    """A coordinator with preset rooms, no transport and no persistence."""
    return EventCoordinator(
        broadcaster,
        default_room="general",
        preset_rooms=["general", "tech", "gaming", "support"],
    )


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Run every test without relay env overrides and with fresh config."""
    for name in RELAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()
    MessageStore.reset_instance()


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app with lifespan running.

    Entering the client keeps every WebSocket session on one event loop,
    which the coordinator's lock requires.
    """
    from relay.main import app

    with TestClient(app) as client:
        yield client
