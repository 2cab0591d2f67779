"""Client session controller.

Keeps one logical session alive across transport drops:
- Recalls the session ID from a shareable address, or generates one lazily
- Drives Disconnected -> Connecting -> Connected -> Reconnecting state
  machine from a single background task
- Re-registers the session after every successful (re)connect so the
  server replays recent history

Usage:
    client = SessionClient("ws://127.0.0.1:5258/chathub?sessionId=abc")
    client.add_message_listener(print)
    await client.start()
    await client.wait_registered(timeout=10)
    await client.send_message("hi")
    await client.stop()
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiohttp

from hubrelay.errors import ConnectionClosedError, InvocationError, ProtocolError, SessionIdError
from hubrelay.protocol import (
    RECEIVE_CONNECTION_ID,
    RECEIVE_MESSAGE,
    RECEIVE_USER_SESSION,
    Completion,
    Event,
    Invocation,
    decode_frame,
    encode_frame,
)
from hubrelay.validation import SessionId, generate_session_id, parse_session_id

logger = logging.getLogger(__name__)

SESSION_QUERY_KEYS = ("sessionId", "connectionId")

CONNECT_ERRORS = (aiohttp.ClientError, OSError, asyncio.TimeoutError)


class ConnectionStatus(Enum):
    """Connection state exposed to the presentation layer."""

    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    RECONNECTING = "Reconnecting"


StatusListener = Callable[[ConnectionStatus], None]
MessageListener = Callable[[str], None]


def recall_session_id(address: str) -> Optional[SessionId]:
    """Extract a session ID from a shareable address.

    Looks at the sessionId query parameter, then the legacy connectionId
    parameter, then the fragment ("#abc" or "#sessionId=abc").
    """
    parts = urlsplit(address)
    query = dict(parse_qsl(parts.query))
    candidates = [query.get(key) for key in SESSION_QUERY_KEYS]

    if parts.fragment:
        fragment = dict(parse_qsl(parts.fragment))
        candidates.append(fragment.get("sessionId") if fragment else parts.fragment)

    for candidate in candidates:
        if candidate is None:
            continue
        try:
            return parse_session_id(candidate)
        except SessionIdError as e:
            logger.warning(f"Ignoring session ID in address: {e}")
    return None


def strip_session_id(address: str) -> str:
    """Address without session query parameters or fragment."""
    parts = urlsplit(address)
    query = [
        (k, v) for k, v in parse_qsl(parts.query) if k not in SESSION_QUERY_KEYS
    ]
    return urlunsplit(parts._replace(query=urlencode(query), fragment=""))


def with_session_id(address: str, session_id: str) -> str:
    """Address with the sessionId query parameter set."""
    parts = urlsplit(strip_session_id(address))
    query = parse_qsl(parts.query)
    query.append(("sessionId", session_id))
    return urlunsplit(parts._replace(query=urlencode(query)))


class SessionClient:
    """Reconnecting client for one logical session.

    Only one connect attempt is ever in flight: all connecting, retrying
    and reconnecting happens inside a single task started by start().
    """

    def __init__(
        self,
        url: str,
        session_id: Optional[str] = None,
        retry_delay: float = 5.0,
        reconnect_delays: Optional[Sequence[float]] = None,
        invoke_timeout: float = 10.0,
        connect_timeout: float = 10.0,
        heartbeat: Optional[float] = 30.0,
        http_session: Optional[aiohttp.ClientSession] = None,
        id_factory: Callable[[], SessionId] = generate_session_id,
    ):
        """Initialize client.

        Args:
            url: Hub WebSocket address, optionally carrying ?sessionId=.
            session_id: Explicit session ID; overrides the address.
            retry_delay: Fixed delay between failed initial connects (seconds).
            reconnect_delays: Delays before each automatic reconnect attempt
                after a drop. Exhausting them ends in DISCONNECTED.
            invoke_timeout: Max wait for a hub method completion (seconds).
            connect_timeout: Max wait for the WebSocket handshake (seconds).
            heartbeat: WebSocket ping interval, None to disable.
            http_session: Optional aiohttp session (for testing).
            id_factory: Generates a session ID when none is known.
        """
        self._address = url
        self._url = strip_session_id(url)
        self._session_id: Optional[SessionId] = (
            parse_session_id(session_id) if session_id is not None else recall_session_id(url)
        )
        self._retry_delay = retry_delay
        self._reconnect_delays = list(
            reconnect_delays if reconnect_delays is not None else (0.0, 2.0, 10.0, 30.0)
        )
        self._invoke_timeout = invoke_timeout
        self._connect_timeout = connect_timeout
        self._heartbeat = heartbeat
        self._http = http_session
        self._owns_http = http_session is None
        self._id_factory = id_factory

        self.messages: list[str] = []
        self.connection_id: Optional[str] = None
        self.last_error: Optional[str] = None

        self._status = ConnectionStatus.DISCONNECTED
        self._status_changed = asyncio.Event()
        self._registered = asyncio.Event()
        self._status_listeners: list[StatusListener] = []
        self._message_listeners: list[MessageListener] = []

        self._task: Optional[asyncio.Task] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._next_invocation_id = 0
        self._stopping = False

    # =========================================================================
    # Observable state
    # =========================================================================

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def session_id(self) -> Optional[SessionId]:
        return self._session_id

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def add_message_listener(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def share_url(self) -> Optional[str]:
        """Address that resumes this session, once a session ID exists."""
        if self._session_id is None:
            return None
        return with_session_id(self._address, self._session_id)

    def clear_messages(self) -> None:
        self.messages.clear()

    async def wait_for_status(
        self, status: ConnectionStatus, timeout: Optional[float] = None
    ) -> None:
        """Wait until the client reaches status.

        Raises:
            asyncio.TimeoutError: If timeout elapses first.
        """

        async def _wait() -> None:
            while self._status is not status:
                changed = self._status_changed
                await changed.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)

    async def wait_registered(self, timeout: Optional[float] = None) -> None:
        """Wait until the session is registered on the current connection."""
        await asyncio.wait_for(self._registered.wait(), timeout=timeout)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        logger.info(f"Connection status: {self._status.value} -> {status.value}")
        self._status = status
        # Wake current waiters, then arm a fresh event for the next change
        self._status_changed.set()
        self._status_changed = asyncio.Event()
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Status listener error: {e}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start connecting in the background.

        A no-op while a connect/reconnect cycle is already active.
        """
        if self.is_running:
            logger.debug("start() ignored: connection attempt already active")
            return

        self._stopping = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Disconnect and stop reconnecting."""
        self._stopping = True

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._close_ws()
        await self._close_http()

        self.connection_id = None
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def disconnect(self) -> None:
        await self.stop()

    async def restart(self) -> None:
        """Drop the current connection and start a fresh one."""
        await self.stop()
        self.clear_messages()
        await self.start()

    # =========================================================================
    # Hub operations
    # =========================================================================

    async def send_message(self, text: str) -> Optional[str]:
        """Send a chat message.

        Uses the session-aware SendUserMessage once a session ID is known,
        else the plain SendMessage echo.

        Returns:
            The server's acknowledgment, or None if it could not be sent.
        """
        if self._session_id:
            return await self._safe_invoke("SendUserMessage", self._session_id, text)
        return await self._safe_invoke("SendMessage", text)

    async def request_connection_id(self) -> Optional[str]:
        return await self._safe_invoke("GetConnectionId")

    async def join_group(self, group: str) -> bool:
        return await self._safe_invoke_ok("JoinGroup", group)

    async def leave_group(self, group: str) -> bool:
        return await self._safe_invoke_ok("LeaveGroup", group)

    async def send_group_message(self, group: str, text: str) -> bool:
        return await self._safe_invoke_ok("SendGroupMessage", group, text)

    # =========================================================================
    # Connection state machine
    # =========================================================================

    async def _run(self) -> None:
        try:
            while not self._stopping:
                self._begin_attempt(ConnectionStatus.CONNECTING)
                try:
                    ws = await self._open()
                except CONNECT_ERRORS as e:
                    self.last_error = str(e) or type(e).__name__
                    logger.warning(
                        f"Connect to {self._url} failed: {self.last_error}; "
                        f"retrying in {self._retry_delay}s"
                    )
                    self._set_status(ConnectionStatus.DISCONNECTED)
                    await asyncio.sleep(self._retry_delay)
                    continue

                while ws is not None:
                    await self._serve(ws)
                    if self._stopping:
                        return
                    ws = await self._reconnect()

                logger.warning("Reconnect attempts exhausted; giving up")
                return
        finally:
            await self._close_ws()
            await self._close_http()
            self.connection_id = None
            self._set_status(ConnectionStatus.DISCONNECTED)

    def _begin_attempt(self, status: ConnectionStatus) -> None:
        # Stale lines from an earlier transport must not mix with the next one
        self.messages.clear()
        self._registered.clear()
        self.connection_id = None
        self._set_status(status)

    async def _open(self) -> aiohttp.ClientWebSocketResponse:
        if self._http is None:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return await asyncio.wait_for(
            self._http.ws_connect(self._url, heartbeat=self._heartbeat),
            timeout=self._connect_timeout,
        )

    async def _reconnect(self) -> Optional[aiohttp.ClientWebSocketResponse]:
        for attempt, delay in enumerate(self._reconnect_delays, start=1):
            self._begin_attempt(ConnectionStatus.RECONNECTING)
            if delay > 0:
                await asyncio.sleep(delay)
            if self._stopping:
                return None
            try:
                return await self._open()
            except CONNECT_ERRORS as e:
                self.last_error = str(e) or type(e).__name__
                logger.info(
                    f"Reconnect attempt {attempt}/{len(self._reconnect_delays)} "
                    f"failed: {self.last_error}"
                )
        return None

    async def _serve(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Run one connected period: register, then read until the socket drops."""
        self._ws = ws
        self._set_status(ConnectionStatus.CONNECTED)
        reader = asyncio.create_task(self._read_loop(ws))
        try:
            await self._register_session()
            await reader
        finally:
            if not reader.done():
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    pass
            self._ws = None
            self._fail_pending()
            if not ws.closed:
                await ws.close()

    async def _register_session(self) -> None:
        if self._session_id is None:
            self._session_id = self._id_factory()
            logger.info(f"Generated new session ID {self._session_id}")

        result = await self._safe_invoke("RegisterUserSession", self._session_id)
        if result is not None:
            self._registered.set()

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"WebSocket error: {ws.exception()}")
                break
        logger.info("Connection closed by server or network")
        self._fail_pending()

    def _handle_frame(self, data: str) -> None:
        try:
            frame = decode_frame(data)
        except ProtocolError as e:
            logger.warning(f"Bad frame from server: {e}")
            return

        if isinstance(frame, Completion):
            future = self._pending.get(frame.invocation_id)
            if future is not None and not future.done():
                future.set_result(frame)
        elif isinstance(frame, Event):
            self._handle_event(frame)
        else:
            logger.warning(f"Unexpected {type(frame).__name__} frame from server")

    def _handle_event(self, event: Event) -> None:
        payload = event.arguments[0] if event.arguments else None

        if event.target == RECEIVE_MESSAGE and isinstance(payload, str):
            self.messages.append(payload)
            for listener in list(self._message_listeners):
                try:
                    listener(payload)
                except Exception as e:
                    logger.error(f"Message listener error: {e}")
        elif event.target == RECEIVE_CONNECTION_ID and isinstance(payload, str):
            self.connection_id = payload
            logger.debug(f"Received connection ID from server: {payload}")
        elif event.target == RECEIVE_USER_SESSION and isinstance(payload, str):
            try:
                self._session_id = parse_session_id(payload)
            except SessionIdError as e:
                logger.warning(f"Server sent invalid session ID: {e}")
        else:
            logger.debug(f"Ignoring event {event.target}")

    # =========================================================================
    # Invocation plumbing
    # =========================================================================

    async def _invoke(self, target: str, *arguments: Any) -> Any:
        ws = self._ws
        if ws is None or ws.closed or self._status is not ConnectionStatus.CONNECTED:
            raise ConnectionClosedError("Not connected")

        self._next_invocation_id += 1
        invocation_id = str(self._next_invocation_id)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[invocation_id] = future

        try:
            frame = Invocation(target=target, arguments=list(arguments), invocation_id=invocation_id)
            await ws.send_str(encode_frame(frame))
            completion: Completion = await asyncio.wait_for(future, timeout=self._invoke_timeout)
        except asyncio.TimeoutError as e:
            raise InvocationError(f"{target} timed out") from e
        except (ConnectionError, RuntimeError) as e:
            raise ConnectionClosedError(f"{target} send failed: {e}") from e
        finally:
            self._pending.pop(invocation_id, None)

        if completion.error is not None:
            raise InvocationError(completion.error)
        return completion.result

    async def _safe_invoke(self, target: str, *arguments: Any) -> Any:
        try:
            return await self._invoke(target, *arguments)
        except ConnectionClosedError as e:
            logger.warning(f"Cannot invoke {target}: {e}")
        except InvocationError as e:
            logger.error(f"{target} failed: {e}")
        return None

    async def _safe_invoke_ok(self, target: str, *arguments: Any) -> bool:
        try:
            await self._invoke(target, *arguments)
            return True
        except ConnectionClosedError as e:
            logger.warning(f"Cannot invoke {target}: {e}")
        except InvocationError as e:
            logger.error(f"{target} failed: {e}")
        return False

    def _fail_pending(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionClosedError("Connection lost"))
        self._pending.clear()

    async def _close_ws(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None and not ws.closed:
            await ws.close()

    async def _close_http(self) -> None:
        if self._owns_http and self._http:
            await self._http.close()
            # Allow event loop to clean up connector
            await asyncio.sleep(0)
            self._http = None
