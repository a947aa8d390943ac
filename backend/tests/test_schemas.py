"""Tests for chat payload normalization, message IDs and timestamp helpers."""
from datetime import datetime, timezone
from unittest.mock import patch

from relay.chat.schemas import (
    Message,
    MessageIdGenerator,
    coerce_message_id,
    format_timestamp,
    normalize_join,
    normalize_message_read,
    normalize_private_message,
    normalize_send_message,
    normalize_switch_room,
    normalize_typing,
    parse_timestamp_ms,
    utc_now_iso,
)


# ---------------------------------------------------------------------------
# Inbound normalization
# ---------------------------------------------------------------------------


class TestNormalizeJoin:
    def test_inline_fields(self):
        payload = normalize_join({"type": "join", "username": "alice", "room": "tech"})
        assert payload.username == "alice"
        assert payload.room == "tech"

    def test_wrapped_fields(self):
        payload = normalize_join({"type": "join", "data": {"username": "alice"}})
        assert payload.username == "alice"
        assert payload.room is None

    def test_legacy_bare_username(self):
        payload = normalize_join({"type": "user_join", "data": "bob"})
        assert payload.username == "bob"
        assert payload.room is None

    def test_blank_username_is_rejected(self):
        assert normalize_join({"type": "join", "username": "   "}) is None
        assert normalize_join({"type": "join"}) is None
        assert normalize_join({"type": "join", "username": 42}) is None

    def test_non_string_room_is_dropped(self):
        payload = normalize_join({"type": "join", "username": "alice", "room": 7})
        assert payload.room is None


class TestNormalizeOtherEvents:
    def test_switch_room_forms(self):
        assert normalize_switch_room({"type": "switch_room", "room": "tech"}).room == "tech"
        assert normalize_switch_room({"type": "switch_room", "data": "gaming"}).room == "gaming"
        assert normalize_switch_room({"type": "switch_room"}).room is None

    def test_send_message_returns_raw_fields(self):
        fields = normalize_send_message(
            {"type": "send_message", "message": "hi", "file": "notadict"}
        )
        assert fields == {"message": "hi", "file": "notadict"}

    def test_typing_bare_boolean(self):
        payload = normalize_typing({"type": "typing", "data": True})
        assert payload.isTyping is True
        assert payload.room is None

    def test_typing_object(self):
        payload = normalize_typing({"type": "typing", "isTyping": False, "room": "tech"})
        assert payload.isTyping is False
        assert payload.room == "tech"

    def test_typing_room_is_trimmed(self):
        payload = normalize_typing({"type": "typing", "isTyping": True, "room": " general "})
        assert payload.room == "general"

    def test_typing_blank_room_means_current_room(self):
        payload = normalize_typing({"type": "typing", "isTyping": True, "room": "   "})
        assert payload.room is None

    def test_message_read_blank_room_is_dropped(self):
        payload = normalize_message_read({"type": "message_read", "messageId": 3, "room": "  "})
        assert payload.room is None

    def test_private_message_requires_target(self):
        assert normalize_private_message({"type": "private_message", "message": "x"}) is None
        payload = normalize_private_message(
            {"type": "private_message", "to": "c2", "message": "psst"}
        )
        assert payload.to == "c2"
        assert payload.message == "psst"

    def test_message_read_accepts_int_and_string_ids(self):
        assert normalize_message_read({"type": "message_read", "messageId": 12}).messageId == 12
        assert normalize_message_read({"type": "message_read", "messageId": "12"}).messageId == "12"

    def test_message_read_rejects_invalid_ids(self):
        assert normalize_message_read({"type": "message_read"}) is None
        assert normalize_message_read({"type": "message_read", "messageId": True}) is None
        assert normalize_message_read({"type": "message_read", "messageId": [1]}) is None

    def test_coerce_message_id(self):
        assert coerce_message_id(5) == 5
        assert coerce_message_id("17") == 17
        assert coerce_message_id("abc") is None


# ---------------------------------------------------------------------------
# Message model
# ---------------------------------------------------------------------------


class TestMessage:
    def test_defaults(self):
        message = Message(id=1, room="general", senderId="c1", timestamp=utc_now_iso())
        assert message.sender == "Anonymous"
        assert message.readBy == []
        assert message.isPrivate is False
        assert message.file is None

    def test_mark_read_is_idempotent(self):
        message = Message(id=1, room="general", senderId="c1", timestamp=utc_now_iso())

        assert message.mark_read("c2") is True
        assert message.mark_read("c2") is False
        assert message.readBy == ["c2"]


# ---------------------------------------------------------------------------
# IDs and timestamps
# ---------------------------------------------------------------------------


class TestMessageIdGenerator:
    def test_ids_strictly_increase_within_same_millisecond(self):
        generator = MessageIdGenerator()
        with patch("relay.chat.schemas.time.time", return_value=1_700_000_000.0):
            ids = [generator.next_id() for _ in range(5)]

        assert ids == [1_700_000_000_000 + n for n in range(5)]

    def test_ids_do_not_go_backwards_with_the_clock(self):
        generator = MessageIdGenerator()
        with patch("relay.chat.schemas.time.time", return_value=1_700_000_000.0):
            first = generator.next_id()
        with patch("relay.chat.schemas.time.time", return_value=1_600_000_000.0):
            second = generator.next_id()

        assert second == first + 1

    def test_ids_follow_wall_clock(self):
        generator = MessageIdGenerator()
        with patch("relay.chat.schemas.time.time", return_value=1_700_000_000.5):
            assert generator.next_id() == 1_700_000_000_500


class TestTimestamps:
    def test_format_timestamp_millisecond_precision(self):
        moment = datetime(2024, 5, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)
        assert format_timestamp(moment) == "2024-05-01T12:30:45.123Z"

    def test_format_naive_datetime_as_utc(self):
        assert format_timestamp(datetime(2024, 5, 1)) == "2024-05-01T00:00:00.000Z"

    def test_utc_now_iso_shape(self):
        stamp = utc_now_iso()
        assert stamp.endswith("Z")
        assert parse_timestamp_ms(stamp) is not None

    def test_parse_iso_with_z(self):
        assert parse_timestamp_ms("1970-01-01T00:00:01.500Z") == 1500

    def test_parse_iso_with_offset(self):
        assert parse_timestamp_ms("1970-01-01T01:00:01+01:00") == 1000

    def test_parse_epoch_milliseconds(self):
        assert parse_timestamp_ms(1500) == 1500
        assert parse_timestamp_ms("1500") == 1500

    def test_parse_datetime(self):
        moment = datetime(1970, 1, 1, 0, 0, 2, tzinfo=timezone.utc)
        assert parse_timestamp_ms(moment) == 2000

    def test_parse_garbage_returns_none(self):
        assert parse_timestamp_ms("yesterday") is None
        assert parse_timestamp_ms("") is None
        assert parse_timestamp_ms(None) is None
        assert parse_timestamp_ms(True) is None
        assert parse_timestamp_ms("nan") is None
        assert parse_timestamp_ms(float("inf")) is None
