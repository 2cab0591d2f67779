"""Pytest configuration and shared fixtures."""

import asyncio
import json
import socket
import time
from datetime import datetime

import pytest
import pytest_asyncio


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from hubrelay.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors."""
    yield
    await asyncio.sleep(0)


class MockWebSocket:
    """In-memory stand-in for an aiohttp WebSocketResponse."""

    def __init__(self, fail_send: bool = False, send_delay: float = 0.0):
        self.closed = False
        self.fail_send = fail_send
        self.send_delay = send_delay
        self.sent: list[dict] = []

    async def send_str(self, data: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_send:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, message: bytes = b"") -> None:
        self.closed = True

    def messages(self) -> list[str]:
        """Texts of all ReceiveMessage events sent so far."""
        return [
            f["arguments"][0]
            for f in self.sent
            if f.get("type") == "event" and f.get("target") == "ReceiveMessage"
        ]


class FixedClock:
    """Deterministic clock; advance() moves it forward."""

    def __init__(self, start: datetime = datetime(2026, 1, 2, 14, 3, 7)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


def free_port() -> int:
    """An ephemeral TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll predicate until it is true or fail the test."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("Condition not met before timeout")
        await asyncio.sleep(interval)
