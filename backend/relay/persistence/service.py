"""DuckDB-backed durable message store.

The store mirrors committed chat messages so history survives restarts.
It is never the source of truth for recent history (the in-memory room
state is); it is only read when in-memory history has nothing to offer.

Database Schema:
    messages table:
        - id: Message identifier (primary key, upserted)
        - room: Room name
        - sender / sender_id: Display name and connection ID of the sender
        - message: Optional text body
        - file: Optional attachment as JSON text ({name, type, data})
        - timestamp: Creation time (UTC)
        - read_by: JSON array of reader connection IDs
        - is_private: Direct message flag

Thread Safety:
    A DuckDB connection must not be used from several threads at once.
    Calls are made from the event loop's executor, so every statement runs
    under a process-local lock.

Usage:
    store = MessageStore.get_instance(db_path="relay_messages.duckdb")
    store.upsert(message)
    older = store.find("general", before_ms=1700000000000, limit=25)
"""
import json
import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from relay.chat.schemas import FileAttachment, Message, format_timestamp

logger = logging.getLogger(__name__)


class MessageStore:
    """Singleton DuckDB store for chat messages.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "relay_messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open (or create) the database and its schema.

        Args:
            db_path: Path to DuckDB file, or ":memory:".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and drop the singleton (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the messages table (idempotent)."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id BIGINT PRIMARY KEY,
                    room VARCHAR NOT NULL,
                    sender VARCHAR NOT NULL,
                    sender_id VARCHAR NOT NULL,
                    message VARCHAR,
                    file VARCHAR,
                    timestamp TIMESTAMP NOT NULL,
                    read_by VARCHAR NOT NULL,
                    is_private BOOLEAN NOT NULL DEFAULT FALSE
                )
            """)
        logger.info("Message store ready at %s", self._db_path)

    def upsert(self, message: Message) -> None:
        """Insert a message, or replace the stored copy with the same id."""
        timestamp = datetime.fromisoformat(message.timestamp.replace("Z", "+00:00"))
        # TIMESTAMP columns are naive; store UTC wall time
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
        file_json = json.dumps(message.file.model_dump()) if message.file else None
        with self._lock:
            self._get_connection().execute(
                """
                INSERT OR REPLACE INTO messages
                    (id, room, sender, sender_id, message, file, timestamp, read_by, is_private)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message.id,
                    message.room,
                    message.sender,
                    message.senderId,
                    message.message,
                    file_json,
                    timestamp,
                    json.dumps(message.readBy),
                    message.isPrivate,
                ]
            )

    def delete(self, message_id: int) -> None:
        """Remove a stored message; unknown ids are ignored."""
        with self._lock:
            self._get_connection().execute(
                "DELETE FROM messages WHERE id = ?", [message_id]
            )

    def find(
        self,
        room: str,
        before_ms: Optional[int] = None,
        limit: int = 25
    ) -> List[Message]:
        """Newest-first messages of a room, optionally older than a cursor.

        Args:
            room: Room name.
            before_ms: Epoch-millisecond cursor; only strictly older rows.
            limit: Maximum number of rows.

        Returns:
            Messages ordered newest first.
        """
        if limit <= 0:
            return []
        query = """
            SELECT id, room, sender, sender_id, message, file, timestamp, read_by, is_private
            FROM messages
            WHERE room = ?
        """
        params: list = [room]
        if before_ms is not None:
            cursor = datetime.fromtimestamp(before_ms / 1000, tz=timezone.utc).replace(tzinfo=None)
            query += " AND timestamp < ?"
            params.append(cursor)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._lock:
            rows = self._get_connection().execute(query, params).fetchall()
        return [self._row_to_message(row) for row in rows]

    def count(self, room: Optional[str] = None) -> int:
        with self._lock:
            conn = self._get_connection()
            if room is None:
                row = conn.execute("SELECT COUNT(*) FROM messages").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM messages WHERE room = ?", [room]
                ).fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    def _row_to_message(row: tuple) -> Message:
        file_data = json.loads(row[5]) if row[5] else None
        return Message(
            id=row[0],
            room=row[1],
            sender=row[2],
            senderId=row[3],
            message=row[4],
            file=FileAttachment(**file_data) if file_data else None,
            timestamp=format_timestamp(row[6]),
            readBy=json.loads(row[7]) if row[7] else [],
            isPrivate=bool(row[8]),
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
