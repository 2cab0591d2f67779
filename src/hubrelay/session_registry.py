"""Registry mapping logical sessions to transport connections."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from hubrelay.history import DEFAULT_MAX_MESSAGES, MessageHistory, MessageRecord
from hubrelay.validation import SessionId

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Mutable session state. Only the registry touches instances."""

    session_id: SessionId
    history: MessageHistory
    created_at: datetime
    bound_connection: Optional[str] = None
    last_bound_at: Optional[datetime] = None
    last_unbound_at: Optional[datetime] = None


@dataclass(frozen=True)
class SessionSnapshot:
    """Point-in-time copy of a session, safe to use outside the lock.

    Attributes:
        session_id: Logical session identifier.
        history: Retained records, oldest first.
        created: True if this registration created the session.
        bound_connection: Connection bound when the snapshot was taken.
        previous_connection: Connection bound before a rebind, if any.
        last_bound_at: When the session was last bound.
        last_unbound_at: When the session was last unbound.
    """

    session_id: SessionId
    history: tuple[MessageRecord, ...]
    created: bool = False
    bound_connection: Optional[str] = None
    previous_connection: Optional[str] = None
    last_bound_at: Optional[datetime] = None
    last_unbound_at: Optional[datetime] = None


class SessionRegistry:
    """Thread-safe table of logical sessions.

    Holds a forward map (session_id -> Session) and a reverse index
    (connection_id -> session_id). Both are only mutated together while
    holding the single registry lock. No I/O happens here.

    Sessions are never removed implicitly; they live until clear() is
    called at shutdown.
    """

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize empty registry.

        Args:
            max_messages: History cap per session.
            clock: Time source for binding timestamps (injectable for tests).
        """
        self._max_messages = max_messages
        self._clock = clock
        self._sessions: dict[SessionId, Session] = {}
        self._by_connection: dict[str, SessionId] = {}
        self._lock = threading.Lock()

    @property
    def max_messages(self) -> int:
        return self._max_messages

    def register_or_rebind(
        self, session_id: SessionId, connection_id: str
    ) -> SessionSnapshot:
        """Create or rebind a session to a connection.

        Unseen sessions are created empty and bound. Known sessions are
        rebound to connection_id; their history is left untouched. If
        connection_id was bound to a different session, that session is
        unbound first.

        Args:
            session_id: Validated logical session identifier.
            connection_id: Transport connection identifier.

        Returns:
            Snapshot with the session's current history and created flag.
        """
        with self._lock:
            now = self._clock()

            other_id = self._by_connection.get(connection_id)
            if other_id is not None and other_id != session_id:
                other = self._sessions[other_id]
                other.bound_connection = None
                other.last_unbound_at = now
                logger.info(
                    f"Connection {connection_id} moved from session {other_id} "
                    f"to {session_id}"
                )

            session = self._sessions.get(session_id)
            created = session is None
            if session is None:
                session = Session(
                    session_id=session_id,
                    history=MessageHistory(self._max_messages),
                    created_at=now,
                )
                self._sessions[session_id] = session

            previous = session.bound_connection
            if previous is not None and previous != connection_id:
                self._by_connection.pop(previous, None)

            session.bound_connection = connection_id
            session.last_bound_at = now
            self._by_connection[connection_id] = session_id

            snapshot = self._snapshot(session, created=created, previous=previous)

        if created:
            logger.info(f"Created session {session_id} on connection {connection_id}")
        else:
            logger.info(
                f"Rebound session {session_id}: {previous} -> {connection_id} "
                f"({len(snapshot.history)} messages retained)"
            )
        return snapshot

    def append_message(self, session_id: SessionId, record: MessageRecord) -> bool:
        """Append a record to a session's history.

        Returns:
            True if appended, False if the session is unknown (nothing created).
        """
        return self.append_messages(session_id, (record,))

    def append_messages(
        self, session_id: SessionId, records: Iterable[MessageRecord]
    ) -> bool:
        """Append several records in one atomic step.

        Returns:
            True if appended, False if the session is unknown (nothing created).
        """
        records = tuple(records)
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.history.extend(records)
                total = len(session.history)

        if session is None:
            logger.warning(f"Session {session_id} not found; dropped {len(records)} messages")
            return False

        logger.debug(f"Messages stored for session {session_id}. Total: {total}")
        return True

    def unbind(self, connection_id: str) -> Optional[SessionId]:
        """Clear the binding of whichever session is bound to connection_id.

        A connection that is no longer bound to any session (for example
        because its session was rebound elsewhere) is a no-op.

        Returns:
            The session that was unbound, or None.
        """
        with self._lock:
            session_id = self._by_connection.pop(connection_id, None)
            if session_id is None:
                return None

            session = self._sessions[session_id]
            if session.bound_connection == connection_id:
                session.bound_connection = None
                session.last_unbound_at = self._clock()

        logger.info(f"Unbound session {session_id} from connection {connection_id}")
        return session_id

    def lookup_bound_connection(self, session_id: SessionId) -> Optional[str]:
        """Get the connection currently bound to a session, if any."""
        with self._lock:
            session = self._sessions.get(session_id)
            return session.bound_connection if session is not None else None

    def get(self, session_id: SessionId) -> Optional[SessionSnapshot]:
        """Get a snapshot of a session by ID."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            return self._snapshot(session)

    def list_all(self) -> list[SessionSnapshot]:
        """Snapshots of all sessions, in creation order."""
        with self._lock:
            return [self._snapshot(s) for s in self._sessions.values()]

    def bound_count(self) -> int:
        """Number of sessions that currently have a connection."""
        with self._lock:
            return len(self._by_connection)

    def clear(self) -> None:
        """Drop all sessions. Used at server shutdown."""
        with self._lock:
            self._sessions.clear()
            self._by_connection.clear()

    def _snapshot(
        self,
        session: Session,
        created: bool = False,
        previous: Optional[str] = None,
    ) -> SessionSnapshot:
        # Caller holds the lock.
        return SessionSnapshot(
            session_id=session.session_id,
            history=session.history.snapshot(),
            created=created,
            bound_connection=session.bound_connection,
            previous_connection=previous,
            last_bound_at=session.last_bound_at,
            last_unbound_at=session.last_unbound_at,
        )

    def __len__(self) -> int:
        """Return number of sessions in registry."""
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        """Check if session exists in registry."""
        with self._lock:
            return session_id in self._sessions
