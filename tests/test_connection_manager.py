"""Tests for connection manager module."""

import pytest

from hubrelay.connection_manager import Connection, ConnectionManager
from hubrelay.errors import ConnectionClosedError
from hubrelay.protocol import Event
from tests.conftest import MockWebSocket


def event(text: str) -> Event:
    return Event(target="ReceiveMessage", arguments=[text])


class TestConnection:
    """Tests for Connection class."""

    @pytest.mark.asyncio
    async def test_send_encodes_frame(self):
        ws = MockWebSocket()
        conn = Connection(connection_id="c1", ws=ws)

        await conn.send(event("hi"))

        assert ws.messages() == ["hi"]

    @pytest.mark.asyncio
    async def test_send_on_closed_raises(self):
        ws = MockWebSocket()
        ws.closed = True
        conn = Connection(connection_id="c1", ws=ws)

        with pytest.raises(ConnectionClosedError):
            await conn.send(event("hi"))


class TestConnectionManager:
    """Tests for ConnectionManager."""

    @pytest.mark.asyncio
    async def test_add_assigns_unique_ids(self):
        manager = ConnectionManager()

        c1 = await manager.add_connection(MockWebSocket())
        c2 = await manager.add_connection(MockWebSocket())

        assert c1.connection_id != c2.connection_id
        assert len(manager) == 2
        assert manager.get_connection(c1.connection_id) is c1

    @pytest.mark.asyncio
    async def test_send_to_unknown_raises(self):
        manager = ConnectionManager()

        with pytest.raises(ConnectionClosedError):
            await manager.send("missing", event("hi"))

    @pytest.mark.asyncio
    async def test_transport_failure_becomes_connection_closed(self):
        manager = ConnectionManager()
        conn = await manager.add_connection(MockWebSocket(fail_send=True))

        with pytest.raises(ConnectionClosedError):
            await manager.send(conn.connection_id, event("hi"))

    @pytest.mark.asyncio
    async def test_remove_connection_drops_group_membership(self):
        manager = ConnectionManager()
        conn = await manager.add_connection(MockWebSocket())
        await manager.add_to_group(conn.connection_id, "lobby")

        removed = await manager.remove_connection(conn.connection_id)

        assert removed is conn
        assert manager.group_members("lobby") == set()
        assert await manager.remove_connection(conn.connection_id) is None

    @pytest.mark.asyncio
    async def test_group_send_reaches_members_only(self):
        manager = ConnectionManager()
        ws1, ws2, ws3 = MockWebSocket(), MockWebSocket(), MockWebSocket()
        c1 = await manager.add_connection(ws1)
        c2 = await manager.add_connection(ws2)
        await manager.add_connection(ws3)
        await manager.add_to_group(c1.connection_id, "lobby")
        await manager.add_to_group(c2.connection_id, "lobby")

        await manager.send_to_group("lobby", event("hello"))

        assert ws1.messages() == ["hello"]
        assert ws2.messages() == ["hello"]
        assert ws3.messages() == []

    @pytest.mark.asyncio
    async def test_group_send_tolerates_failed_member(self):
        manager = ConnectionManager()
        bad, good = MockWebSocket(fail_send=True), MockWebSocket()
        c_bad = await manager.add_connection(bad)
        c_good = await manager.add_connection(good)
        await manager.add_to_group(c_bad.connection_id, "lobby")
        await manager.add_to_group(c_good.connection_id, "lobby")

        await manager.send_to_group("lobby", event("hello"))

        assert good.messages() == ["hello"]

    @pytest.mark.asyncio
    async def test_leave_group(self):
        manager = ConnectionManager()
        conn = await manager.add_connection(MockWebSocket())
        await manager.add_to_group(conn.connection_id, "lobby")

        await manager.remove_from_group(conn.connection_id, "lobby")
        await manager.remove_from_group(conn.connection_id, "never-joined")

        assert manager.group_members("lobby") == set()

    @pytest.mark.asyncio
    async def test_close_all(self):
        manager = ConnectionManager()
        ws1, ws2 = MockWebSocket(), MockWebSocket()
        await manager.add_connection(ws1)
        await manager.add_connection(ws2)

        await manager.close_all()

        assert ws1.closed and ws2.closed
        assert len(manager) == 0
