"""Best-effort bridge between the in-memory coordinator and durable storage.

The in-memory room history is the source of truth for recent messages; the
durable store is an eventually-consistent mirror (write-through cache):

    - mirror_write() upserts a committed message. It is scheduled as a
      background task so the serialized coordinator path never waits on I/O.
      Scheduled writes reach the store one at a time, in scheduling order.
    - backfill() is awaited only when in-memory history has nothing for a
      history request.

Neither operation ever raises: storage failures are logged and the relay
keeps running in in-memory mode.
"""
import asyncio
import logging
from typing import Any, List, Optional, Set

from relay.chat.schemas import Message, parse_timestamp_ms
from relay.config import PersistenceSettings

from .service import MessageStore

logger = logging.getLogger(__name__)


class PersistenceBridge:
    """Async, failure-tolerant facade over MessageStore.

    A bridge without a store (persistence disabled, or the database could
    not be opened) turns every operation into a no-op.
    """

    def __init__(self, store: Optional[MessageStore] = None) -> None:
        self._store = store
        self._pending: Set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: PersistenceSettings) -> "PersistenceBridge":
        """Open the configured store, falling back to in-memory mode on failure."""
        if not settings.enabled:
            logger.info("Persistence disabled; running in-memory mode")
            return cls()
        try:
            store = MessageStore.get_instance(db_path=settings.db_path)
        except Exception as e:
            logger.warning(
                f"Could not open message store at {settings.db_path}: {e}. "
                "Falling back to in-memory mode"
            )
            return cls()
        return cls(store)

    @property
    def is_connected(self) -> bool:
        return self._store is not None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def mirror_write(self, message: Message) -> None:
        """Upsert a message copy keyed by its id; failures are only logged."""
        if self._store is None:
            return
        await self._write("saving", self._store.upsert, message.model_copy(deep=True))

    def schedule_mirror(self, message: Message) -> Optional[asyncio.Task]:
        """Fire-and-forget mirror_write; returns the task (None if disabled).

        The message is copied now, so later mutations (read receipts) are
        only persisted by their own mirror call.
        """
        if self._store is None:
            return None
        snapshot = message.model_copy(deep=True)
        return self._schedule(self._write("saving", self._store.upsert, snapshot))

    def schedule_discard(self, message_id: int) -> Optional[asyncio.Task]:
        """Fire-and-forget delete of a mirrored message that was rolled back."""
        if self._store is None:
            return None
        return self._schedule(self._write("deleting", self._store.delete, message_id))

    async def _write(self, action: str, operation, argument: Any) -> None:
        # Writes run one at a time in scheduling order
        async with self._write_lock:
            try:
                await asyncio.get_event_loop().run_in_executor(None, operation, argument)
            except Exception as e:
                message_id = getattr(argument, "id", argument)
                logger.error(f"Error {action} message {message_id} in store: {e}")

    def _schedule(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled writes (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def backfill(
        self,
        room: str,
        before: Any = None,
        limit: int = 25
    ) -> List[Message]:
        """Older history from storage, in chronological order.

        The store is queried newest-first (so ``limit`` keeps the messages
        nearest the cursor) and the result is reversed. Returns an empty
        list when persistence is off or the query fails.
        """
        if self._store is None or limit <= 0:
            return []
        before_ms = parse_timestamp_ms(before) if before is not None else None
        try:
            rows = await asyncio.get_event_loop().run_in_executor(
                None, self._store.find, room, before_ms, limit
            )
        except Exception as e:
            logger.error(f"Error fetching history for room {room} from store: {e}")
            return []
        return list(reversed(rows))

    async def close(self) -> None:
        await self.drain()
        if self._store is not None:
            self._store.close()
