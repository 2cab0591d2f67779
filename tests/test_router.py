"""Tests for MessageRouter."""

import logging
from datetime import datetime

import pytest

from hubrelay.connection_manager import ConnectionManager
from hubrelay.history import MessageRecord, MessageRole
from hubrelay.router import MessageRouter
from hubrelay.session_registry import SessionRegistry
from hubrelay.validation import SessionId
from tests.conftest import MockWebSocket


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest.fixture
def router(registry, connections, clock):
    return MessageRouter(registry, connections, clock=clock)


async def connect(connections: ConnectionManager) -> tuple[str, MockWebSocket]:
    ws = MockWebSocket()
    conn = await connections.add_connection(ws)
    return conn.connection_id, ws


def records(n: int) -> list[MessageRecord]:
    return [
        MessageRecord(timestamp=datetime(2026, 1, 2, 8, 0, i % 60), role=MessageRole.ORIGINATOR, text=f"m{i}")
        for i in range(n)
    ]


class TestSendDirect:
    """Test unicast delivery."""

    @pytest.mark.asyncio
    async def test_delivers_timestamped_event(self, router, connections, clock):
        cid, ws = await connect(connections)

        assert await router.send_direct(cid, "hello") is True

        frame = ws.sent[0]
        assert frame["target"] == "ReceiveMessage"
        assert frame["arguments"] == ["hello"]
        assert frame["timestamp"] == clock.now.isoformat(timespec="seconds")

    @pytest.mark.asyncio
    async def test_unknown_connection_is_swallowed(self, router, caplog):
        assert await router.send_direct("gone", "hello") is False
        assert "gone" in caplog.text


class TestEcho:
    """Test session-less SendMessage behavior."""

    @pytest.mark.asyncio
    async def test_echo_formats_response(self, router, connections):
        cid, ws = await connect(connections)

        response = await router.echo(cid, "ping")

        assert response == "Server received: ping at 14:03:07"
        assert ws.messages() == [response]


class TestSendToSession:
    """Test session-aware sends."""

    @pytest.mark.asyncio
    async def test_bound_session_records_pair_and_delivers_echo(
        self, router, registry, connections
    ):
        cid, ws = await connect(connections)
        sid = SessionId("sess-A")
        registry.register_or_rebind(sid, cid)

        ack = await router.send_to_session(sid, "hi")

        assert ack == "[14:03:07] Server: Received - hi"
        assert ws.messages() == [ack]
        history = registry.get(sid).history
        assert [r.role for r in history] == [MessageRole.ORIGINATOR, MessageRole.ECHO]
        assert [r.display for r in history] == ["[14:03:07] You: hi", ack]

    @pytest.mark.asyncio
    async def test_unbound_session_records_without_delivery(
        self, router, registry, connections
    ):
        cid, ws = await connect(connections)
        sid = SessionId("sess-A")
        registry.register_or_rebind(sid, cid)
        registry.unbind(cid)

        await router.send_to_session(sid, "while away")

        assert ws.messages() == []
        assert len(registry.get(sid).history) == 2

    @pytest.mark.asyncio
    async def test_delivers_to_bound_connection_not_other(
        self, router, registry, connections
    ):
        old_cid, old_ws = await connect(connections)
        new_cid, new_ws = await connect(connections)
        sid = SessionId("sess-A")
        registry.register_or_rebind(sid, old_cid)
        registry.register_or_rebind(sid, new_cid)

        await router.send_to_session(sid, "hi")

        assert old_ws.messages() == []
        assert len(new_ws.messages()) == 1

    @pytest.mark.asyncio
    async def test_unknown_session_creates_nothing(self, router, registry):
        await router.send_to_session(SessionId("ghost"), "hi")

        assert "ghost" not in registry

    @pytest.mark.asyncio
    async def test_unknown_session_acknowledges_caller(
        self, router, registry, connections, caplog
    ):
        cid, ws = await connect(connections)

        with caplog.at_level(logging.INFO, logger="hubrelay"):
            ack = await router.send_to_session(SessionId("never-registered"), "hi", caller=cid)

        assert ack == "[14:03:07] Server: Received - hi"
        assert ws.messages() == [ack]
        assert "never-registered" not in registry
        assert "not found" in caplog.text
        assert "kept in history" not in caplog.text

    @pytest.mark.asyncio
    async def test_bound_connection_already_closed_is_swallowed(
        self, router, registry, connections
    ):
        cid, ws = await connect(connections)
        sid = SessionId("sess-A")
        registry.register_or_rebind(sid, cid)
        ws.closed = True

        ack = await router.send_to_session(sid, "hi")

        assert ack.endswith("Received - hi")
        assert len(registry.get(sid).history) == 2


class TestReplayHistory:
    """Test history replay on registration."""

    @pytest.mark.asyncio
    async def test_new_session_marker(self, router, connections):
        cid, ws = await connect(connections)

        replayed = await router.replay_history(cid, SessionId("sess-A"), ())

        assert replayed == 0
        assert ws.messages() == ["--- Started new session: sess-A ---"]

    @pytest.mark.asyncio
    async def test_replays_all_when_few(self, router, connections):
        cid, ws = await connect(connections)

        replayed = await router.replay_history(cid, SessionId("sess-A"), records(2))

        assert replayed == 2
        assert ws.messages() == [
            "--- Restored 2 previous messages ---",
            "[08:00:00] You: m0",
            "[08:00:01] You: m1",
        ]

    @pytest.mark.asyncio
    async def test_replays_last_ten_in_order(self, router, connections):
        cid, ws = await connect(connections)

        replayed = await router.replay_history(cid, SessionId("sess-A"), records(50))

        assert replayed == 10
        sent = ws.messages()
        assert sent[0] == "--- Restored 50 previous messages ---"
        assert [line.split(": ", 1)[1] for line in sent[1:]] == [
            f"m{i}" for i in range(40, 50)
        ]

    @pytest.mark.asyncio
    async def test_each_record_is_its_own_message(self, router, connections):
        cid, ws = await connect(connections)

        await router.replay_history(cid, SessionId("sess-A"), records(3))

        assert len(ws.sent) == 4

    @pytest.mark.asyncio
    async def test_custom_replay_count(self, registry, connections, clock):
        router = MessageRouter(registry, connections, replay_count=3, clock=clock)
        cid, ws = await connect(connections)

        assert await router.replay_history(cid, SessionId("s"), records(5)) == 3
        assert len(ws.messages()) == 4


class TestGroups:
    """Test group pass-through."""

    @pytest.mark.asyncio
    async def test_join_and_leave_confirm_to_caller(self, router, connections):
        cid, ws = await connect(connections)

        await router.join_group(cid, "lobby")
        assert connections.group_members("lobby") == {cid}

        await router.leave_group(cid, "lobby")
        assert connections.group_members("lobby") == set()

        assert ws.messages() == ["You joined group: lobby", "You left group: lobby"]

    @pytest.mark.asyncio
    async def test_send_to_group(self, router, connections):
        c1, ws1 = await connect(connections)
        c2, ws2 = await connect(connections)
        await connections.add_to_group(c1, "lobby")

        await router.send_to_group("lobby", "hello lobby")

        assert ws1.messages() == ["hello lobby"]
        assert ws2.messages() == []
