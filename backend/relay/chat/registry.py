"""Session registry: connection ID -> Session.

Room membership is derived from this registry by filtering on the
session's room; it is never stored anywhere else.
"""
import logging
from typing import Dict, List, Optional

from .schemas import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Owns every live Session, keyed by connection ID."""

    def __init__(self) -> None:
        # connection_id -> Session (dict keeps registration order)
        self._sessions: Dict[str, Session] = {}

    def register(self, connection_id: str, username: str, room: str) -> Session:
        """Create or overwrite the session for a connection.

        Usernames are not required to be unique.
        """
        session = Session(id=connection_id, username=username, room=room)
        self._sessions[connection_id] = session
        return session

    def get(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def update_room(self, connection_id: str, new_room: str) -> None:
        """Move a session to another room; no-op for unknown connections."""
        session = self._sessions.get(connection_id)
        if session is None:
            return
        session.room = new_room

    def remove(self, connection_id: str) -> Optional[Session]:
        return self._sessions.pop(connection_id, None)

    def list_by_room(self, room: str) -> List[Session]:
        """Sessions currently in a room, in registration order."""
        return [s for s in self._sessions.values() if s.room == room]

    def list_all(self) -> List[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions
