"""Tests for the DuckDB message store and the persistence bridge."""
import os
import tempfile
from unittest.mock import MagicMock

import pytest

from relay.chat.schemas import FileAttachment, Message, parse_timestamp_ms
from relay.config import PersistenceSettings
from relay.persistence.bridge import PersistenceBridge
from relay.persistence.service import MessageStore


def make_message(n: int, room: str = "general", **overrides) -> Message:
    fields = dict(
        id=100 + n,
        room=room,
        sender="alice",
        senderId="c1",
        message=f"msg {n}",
        timestamp=f"2024-05-01T12:00:{n:02d}.000Z",
    )
    fields.update(overrides)
    return Message(**fields)


@pytest.fixture
def temp_db():
    """Create a temporary database path for testing."""
    # DuckDB creates the file itself
    db_path = tempfile.mktemp(suffix=".duckdb")

    yield db_path

    MessageStore.reset_instance()
    for path in (db_path, db_path + ".wal"):
        if os.path.exists(path):
            os.remove(path)


@pytest.fixture
def store():
    store = MessageStore(db_path=":memory:")
    yield store
    store.close()


class TestMessageStore:
    def test_upsert_and_find(self, store):
        store.upsert(make_message(1))

        found = store.find("general")

        assert len(found) == 1
        assert found[0].id == 101
        assert found[0].sender == "alice"
        assert found[0].timestamp == "2024-05-01T12:00:01.000Z"

    def test_upsert_replaces_by_id(self, store):
        message = make_message(1)
        store.upsert(message)
        message.mark_read("c2")
        store.upsert(message)

        found = store.find("general")

        assert store.count() == 1
        assert found[0].readBy == ["c2"]

    def test_delete_removes_row(self, store):
        store.upsert(make_message(1))
        store.upsert(make_message(2))

        store.delete(101)
        store.delete(999)

        assert [m.id for m in store.find("general")] == [102]

    def test_file_attachment_round_trip(self, store):
        attachment = FileAttachment(name="cat.png", type="image/png", data="data:image/png;base64,AAAA")
        store.upsert(make_message(1, message=None, file=attachment))

        found = store.find("general")[0]

        assert found.message is None
        assert found.file == attachment

    def test_find_is_newest_first_and_limited(self, store):
        for n in range(6):
            store.upsert(make_message(n))

        found = store.find("general", limit=3)

        assert [m.id for m in found] == [105, 104, 103]

    def test_find_respects_cursor_and_room(self, store):
        for n in range(6):
            store.upsert(make_message(n))
        store.upsert(make_message(50, room="tech", timestamp="2024-05-01T11:00:00.000Z"))

        cursor = parse_timestamp_ms("2024-05-01T12:00:03.000Z")
        found = store.find("general", before_ms=cursor, limit=10)

        assert [m.id for m in found] == [102, 101, 100]

    def test_count_by_room(self, store):
        store.upsert(make_message(1))
        store.upsert(make_message(2, room="tech"))

        assert store.count() == 2
        assert store.count("tech") == 1
        assert store.count("gaming") == 0

    def test_singleton(self, temp_db):
        first = MessageStore.get_instance(db_path=temp_db)
        second = MessageStore.get_instance()

        assert first is second

    def test_data_survives_reopen(self, temp_db):
        store = MessageStore(db_path=temp_db)
        store.upsert(make_message(1))
        store.close()

        reopened = MessageStore(db_path=temp_db)
        assert [m.id for m in reopened.find("general")] == [101]
        reopened.close()


class TestPersistenceBridge:
    @pytest.mark.asyncio
    async def test_disabled_bridge_is_noop(self):
        bridge = PersistenceBridge()

        assert bridge.is_connected is False
        assert bridge.schedule_mirror(make_message(1)) is None
        await bridge.mirror_write(make_message(1))
        assert await bridge.backfill("general") == []

    def test_from_settings_disabled(self):
        bridge = PersistenceBridge.from_settings(PersistenceSettings(enabled=False))
        assert bridge.is_connected is False

    def test_from_settings_enabled(self, temp_db):
        bridge = PersistenceBridge.from_settings(
            PersistenceSettings(enabled=True, db_path=temp_db)
        )
        assert bridge.is_connected is True

    def test_from_settings_falls_back_when_store_cannot_open(self, tmp_path):
        missing_dir = tmp_path / "missing" / "nested" / "relay.duckdb"

        bridge = PersistenceBridge.from_settings(
            PersistenceSettings(enabled=True, db_path=str(missing_dir))
        )

        assert bridge.is_connected is False

    @pytest.mark.asyncio
    async def test_mirror_then_backfill_chronological(self, store):
        bridge = PersistenceBridge(store)
        for n in range(4):
            bridge.schedule_mirror(make_message(n))
        await bridge.drain()

        rows = await bridge.backfill("general", before="2024-05-01T12:00:03.000Z", limit=2)

        assert [m.id for m in rows] == [101, 102]

    @pytest.mark.asyncio
    async def test_mirror_write_copies_the_message(self, store):
        bridge = PersistenceBridge(store)
        message = make_message(1)

        await bridge.mirror_write(message)
        message.mark_read("late-reader")

        assert store.find("general")[0].readBy == []

    @pytest.mark.asyncio
    async def test_schedule_mirror_copies_at_schedule_time(self, store):
        bridge = PersistenceBridge(store)
        message = make_message(1)

        bridge.schedule_mirror(message)
        message.mark_read("late-reader")
        await bridge.drain()

        assert store.find("general")[0].readBy == []

    @pytest.mark.asyncio
    async def test_repeated_mirrors_keep_latest_state(self, store):
        bridge = PersistenceBridge(store)
        message = make_message(1)

        bridge.schedule_mirror(message)
        message.mark_read("c2")
        bridge.schedule_mirror(message)
        message.mark_read("c3")
        bridge.schedule_mirror(message)
        await bridge.drain()

        assert store.find("general")[0].readBy == ["c2", "c3"]

    @pytest.mark.asyncio
    async def test_discard_after_mirror_removes_row(self, store):
        bridge = PersistenceBridge(store)

        bridge.schedule_mirror(make_message(1))
        bridge.schedule_discard(101)
        await bridge.drain()

        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_disabled_bridge_ignores_discard(self):
        assert PersistenceBridge().schedule_discard(101) is None

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self):
        failing = MagicMock()
        failing.upsert.side_effect = RuntimeError("disk full")
        bridge = PersistenceBridge(failing)

        await bridge.mirror_write(make_message(1))

        failing.upsert.assert_called_once()

    @pytest.mark.asyncio
    async def test_read_failure_returns_empty(self):
        failing = MagicMock()
        failing.find.side_effect = RuntimeError("connection lost")
        bridge = PersistenceBridge(failing)

        assert await bridge.backfill("general", limit=5) == []

    @pytest.mark.asyncio
    async def test_malformed_cursor_reads_newest(self, store):
        bridge = PersistenceBridge(store)
        for n in range(3):
            store.upsert(make_message(n))

        rows = await bridge.backfill("general", before="garbage", limit=2)

        assert [m.id for m in rows] == [101, 102]

    @pytest.mark.asyncio
    async def test_close_drains_and_closes_store(self):
        store = MagicMock()
        bridge = PersistenceBridge(store)

        await bridge.close()

        store.close.assert_called_once()
