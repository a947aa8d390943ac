"""Durable message storage for the chat relay.

Messages are mirrored best-effort to a local DuckDB file and read back
only when in-memory room history cannot serve a history request.
"""

from .bridge import PersistenceBridge
from .service import MessageStore

__all__ = [
    "MessageStore",
    "PersistenceBridge",
]
