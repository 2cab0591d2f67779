"""Track hub WebSocket connections and group membership."""

import asyncio
import logging
import secrets
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from hubrelay.errors import ConnectionClosedError
from hubrelay.protocol import Frame, encode_frame

logger = logging.getLogger(__name__)


class WebSocketProtocol(Protocol):
    """Protocol for WebSocket objects (for type hints)."""

    closed: bool

    async def send_str(self, data: str) -> None:
        """Send text data."""
        ...

    async def close(self, code: int = 1000, message: bytes = b"") -> None:
        """Close the WebSocket."""
        ...


def generate_connection_id() -> str:
    """Generate a server-assigned connection ID (22 url-safe chars)."""
    return secrets.token_urlsafe(16)


@dataclass
class Connection:
    """One transport connection. The ID is valid for its lifetime only."""

    connection_id: str
    ws: Any  # WebSocketProtocol
    remote: str = "unknown"
    connected_at: float = field(default_factory=time.time)

    @property
    def closed(self) -> bool:
        return bool(self.ws.closed)

    async def send(self, frame: Frame) -> None:
        """Encode and send a frame on this connection."""
        if self.closed:
            raise ConnectionClosedError(f"Connection {self.connection_id} is closed")
        await self.ws.send_str(encode_frame(frame))

    async def close(self) -> None:
        """Close this connection."""
        await self.ws.close()


class ConnectionManager:
    """Track connections by ID and their group memberships.

    Group membership is the transport-level primitive the router delegates
    to; it is dropped automatically when a connection is removed.
    """

    def __init__(self, send_timeout: float = 5.0):
        """Initialize connection manager.

        Args:
            send_timeout: Timeout for a single send (seconds).
        """
        self.connections: dict[str, Connection] = {}
        self._groups: dict[str, set[str]] = defaultdict(set)
        self._send_timeout = send_timeout
        self._lock = asyncio.Lock()

    async def add_connection(self, ws: WebSocketProtocol, remote: str = "unknown") -> Connection:
        """Register a freshly accepted WebSocket under a new connection ID."""
        conn = Connection(connection_id=generate_connection_id(), ws=ws, remote=remote)
        async with self._lock:
            while conn.connection_id in self.connections:
                conn.connection_id = generate_connection_id()
            self.connections[conn.connection_id] = conn
        logger.info(f"Connection {conn.connection_id} opened from {remote}")
        return conn

    async def remove_connection(self, connection_id: str) -> Optional[Connection]:
        """Forget a connection and drop it from every group."""
        async with self._lock:
            conn = self.connections.pop(connection_id, None)
            for group in list(self._groups):
                members = self._groups[group]
                members.discard(connection_id)
                if not members:
                    del self._groups[group]
        if conn is not None:
            logger.info(
                f"Connection {connection_id} closed after "
                f"{time.time() - conn.connected_at:.1f}s"
            )
        return conn

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        """Get connection by ID."""
        return self.connections.get(connection_id)

    async def send(self, connection_id: str, frame: Frame) -> None:
        """Send a frame to one connection.

        Raises:
            ConnectionClosedError: If the connection is unknown, closed, or
                the send fails or times out.
        """
        conn = self.connections.get(connection_id)
        if conn is None:
            raise ConnectionClosedError(f"Unknown connection {connection_id}")

        try:
            await asyncio.wait_for(conn.send(frame), timeout=self._send_timeout)
        except ConnectionClosedError:
            raise
        except asyncio.TimeoutError as e:
            raise ConnectionClosedError(f"Send timeout to {connection_id}") from e
        except (ConnectionError, RuntimeError) as e:
            # aiohttp raises these when the socket is closing
            raise ConnectionClosedError(f"Send to {connection_id} failed: {e}") from e

    # Group membership

    async def add_to_group(self, connection_id: str, group: str) -> None:
        async with self._lock:
            self._groups[group].add(connection_id)
        logger.debug(f"Connection {connection_id} joined group {group}")

    async def remove_from_group(self, connection_id: str, group: str) -> None:
        async with self._lock:
            members = self._groups.get(group)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._groups[group]
        logger.debug(f"Connection {connection_id} left group {group}")

    def group_members(self, group: str) -> set[str]:
        """Snapshot of the connection IDs in a group."""
        return set(self._groups.get(group, ()))

    async def send_to_group(self, group: str, frame: Frame) -> None:
        """Send a frame to every member of a group (concurrent, fault-tolerant)."""
        async with self._lock:
            members = list(self._groups.get(group, ()))

        if not members:
            return

        async def send_one(connection_id: str) -> tuple[str, Optional[Exception]]:
            try:
                await self.send(connection_id, frame)
                return (connection_id, None)
            except ConnectionClosedError as e:
                return (connection_id, e)

        results = await asyncio.gather(*[send_one(cid) for cid in members])

        for connection_id, error in results:
            if error is not None:
                logger.warning(f"Group send to {connection_id} ({group}) failed: {error}")

    async def close_all(self) -> None:
        """Close all connections gracefully."""
        async with self._lock:
            conns = list(self.connections.values())
            self.connections.clear()
            self._groups.clear()

        if conns:
            await asyncio.gather(
                *[conn.close() for conn in conns],
                return_exceptions=True,
            )

    def __len__(self) -> int:
        return len(self.connections)
