"""Deliver outbound messages and keep session history.

The router decides where a message goes (one connection, the connection
bound to a session, or a group) and records session traffic in the
registry. Delivery is best-effort: failures are logged, never raised.
"""

import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from hubrelay.connection_manager import ConnectionManager
from hubrelay.errors import ConnectionClosedError
from hubrelay.history import MessageRecord, MessageRole
from hubrelay.protocol import RECEIVE_MESSAGE, Event
from hubrelay.session_registry import SessionRegistry
from hubrelay.validation import SessionId

logger = logging.getLogger(__name__)

DEFAULT_REPLAY_COUNT = 10


def restored_marker(count: int) -> str:
    return f"--- Restored {count} previous messages ---"


def new_session_marker(session_id: str) -> str:
    return f"--- Started new session: {session_id} ---"


class MessageRouter:
    """Route messages to connections, sessions and groups."""

    def __init__(
        self,
        registry: SessionRegistry,
        connections: ConnectionManager,
        replay_count: int = DEFAULT_REPLAY_COUNT,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize router.

        Args:
            registry: Session registry (history and bindings).
            connections: Transport connections and groups.
            replay_count: Max history entries resent on registration.
            clock: Time source for envelopes and history records.
        """
        self._registry = registry
        self._connections = connections
        self._replay_count = replay_count
        self._clock = clock

    async def send_direct(self, connection_id: str, text: str) -> bool:
        """Send a ReceiveMessage event to one connection.

        Returns:
            True if handed to the transport, False if the connection is gone.
        """
        event = Event(target=RECEIVE_MESSAGE, arguments=[text], timestamp=self._clock())
        try:
            await self._connections.send(connection_id, event)
            return True
        except ConnectionClosedError as e:
            logger.warning(f"Dropped message for {connection_id}: {e}")
            return False

    async def echo(self, connection_id: str, text: str) -> str:
        """Acknowledge a session-less message back to its sender only."""
        now = self._clock()
        response = f"Server received: {text} at {now:%H:%M:%S}"
        await self.send_direct(connection_id, response)
        return response

    async def send_to_session(
        self, session_id: SessionId, text: str, caller: Optional[str] = None
    ) -> str:
        """Record a user message and its acknowledgment, then deliver.

        Both lines are appended to history in one step. The acknowledgment
        is delivered live only if the session is currently bound; otherwise
        it is only available through history replay. A session that was
        never registered records nothing, and the acknowledgment goes
        straight back to the calling connection instead.

        Args:
            session_id: Target logical session.
            text: The user's message.
            caller: Connection that sent the message, if any.

        Returns:
            The acknowledgment line.
        """
        now = self._clock()
        user_line = MessageRecord(timestamp=now, role=MessageRole.ORIGINATOR, text=text)
        echo_line = MessageRecord(timestamp=now, role=MessageRole.ECHO, text=text)

        if not self._registry.append_messages(session_id, (user_line, echo_line)):
            if caller is not None:
                await self.send_direct(caller, echo_line.display)
            return echo_line.display

        connection_id = self._registry.lookup_bound_connection(session_id)
        if connection_id is None:
            logger.info(f"Session {session_id} is unbound; message kept in history only")
        else:
            await self.send_direct(connection_id, echo_line.display)
        return echo_line.display

    async def replay_history(
        self,
        connection_id: str,
        session_id: SessionId,
        records: Sequence[MessageRecord],
    ) -> int:
        """Resend recent history to a newly bound connection.

        Sends a marker announcing how many entries the session retains,
        then the trailing replay_count entries oldest first, one message
        each. A session without history gets a new-session marker instead.

        Returns:
            Number of history entries resent.
        """
        if not records:
            await self.send_direct(connection_id, new_session_marker(session_id))
            return 0

        await self.send_direct(connection_id, restored_marker(len(records)))
        replayed = list(records)[-self._replay_count:] if self._replay_count > 0 else []
        for record in replayed:
            await self.send_direct(connection_id, record.display)

        logger.info(
            f"Replayed {len(replayed)} of {len(records)} messages "
            f"for session {session_id} to {connection_id}"
        )
        return len(replayed)

    async def send_to_group(self, group: str, text: str) -> None:
        """Broadcast a ReceiveMessage event to every member of a group."""
        event = Event(target=RECEIVE_MESSAGE, arguments=[text], timestamp=self._clock())
        await self._connections.send_to_group(group, event)

    async def join_group(self, connection_id: str, group: str) -> None:
        await self._connections.add_to_group(connection_id, group)
        await self.send_direct(connection_id, f"You joined group: {group}")

    async def leave_group(self, connection_id: str, group: str) -> None:
        await self._connections.remove_from_group(connection_id, group)
        await self.send_direct(connection_id, f"You left group: {group}")
