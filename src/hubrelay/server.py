"""Relay HTTP server.

Single aiohttp server handling all routes:
- /chathub - Hub WebSocket (path configurable)
- /health - Health check
- /api/sessions - Session listing for operators
"""

import logging
from typing import Optional

from aiohttp import WSMsgType, web

from hubrelay.config import Config
from hubrelay.connection_manager import ConnectionManager
from hubrelay.errors import ConnectionClosedError, ProtocolError
from hubrelay.hub import ChatHub
from hubrelay.protocol import Completion, Invocation, decode_frame
from hubrelay.router import MessageRouter
from hubrelay.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


class RelayServer:
    """Relay server owning the session registry for its lifetime.

    The registry is created with the server and cleared on close(); all
    access goes through the hub and router.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        """Initialize relay server.

        Args:
            config: Configuration. Defaults are used if None.
            registry: Optional injected registry (for testing).
        """
        self.config = config or Config()
        self.registry = registry or SessionRegistry(
            max_messages=self.config.history.max_messages
        )
        self.connections = ConnectionManager(
            send_timeout=self.config.server.send_timeout
        )
        self.router = MessageRouter(
            self.registry,
            self.connections,
            replay_count=self.config.history.replay_count,
        )
        self.hub = ChatHub(
            self.registry,
            self.connections,
            self.router,
            handler_timeout=self.config.server.handler_timeout,
        )

        self.app = web.Application()
        self._setup_routes()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._port: int = 0
        self._closing = False

    def _setup_routes(self) -> None:
        """Set up all HTTP routes."""
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_get("/api/sessions", self._handle_list_sessions)
        self.app.router.add_get(self.config.hub_path, self._handle_websocket)

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "connections": len(self.connections),
                "sessions": len(self.registry),
                "bound_sessions": self.registry.bound_count(),
            }
        )

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        sessions = [
            {
                "session_id": s.session_id,
                "bound": s.bound_connection is not None,
                "last_bound_at": s.last_bound_at.isoformat() if s.last_bound_at else None,
                "last_unbound_at": (
                    s.last_unbound_at.isoformat() if s.last_unbound_at else None
                ),
                "history_size": len(s.history),
            }
            for s in self.registry.list_all()
        ]
        return web.json_response({"sessions": sessions})

    # =========================================================================
    # Hub WebSocket
    # =========================================================================

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """Serve one hub connection until it closes.

        Frames from this connection are handled strictly in order. When the
        socket closes, for any reason, the bound session is unbound exactly
        once.
        """
        if self._closing:
            raise web.HTTPServiceUnavailable(text="Relay is shutting down")

        ws = web.WebSocketResponse(heartbeat=self.config.server.heartbeat)
        await ws.prepare(request)

        conn = await self.connections.add_connection(ws, remote=request.remote or "unknown")
        connection_id = conn.connection_id

        try:
            await self.hub.on_connected(connection_id)

            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_frame(connection_id, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    logger.warning(f"Ignoring binary frame from {connection_id}")
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        f"WebSocket error on {connection_id}: {ws.exception()}"
                    )
                    break
        except Exception as e:
            logger.error(f"WebSocket error for {connection_id}: {e}")
            if not ws.closed:
                await ws.close(code=1011, message=b"Internal error")
        finally:
            await self.connections.remove_connection(connection_id)
            await self.hub.on_disconnected(connection_id)

        return ws

    async def _handle_frame(self, connection_id: str, data: str) -> None:
        try:
            frame = decode_frame(data)
        except ProtocolError as e:
            logger.warning(f"Bad frame from {connection_id}: {e}")
            if e.invocation_id is not None:
                await self._send_completion(
                    connection_id, Completion(invocation_id=e.invocation_id, error=str(e))
                )
            return

        if not isinstance(frame, Invocation):
            logger.warning(
                f"Unexpected {type(frame).__name__} frame from {connection_id}"
            )
            return

        completion = await self.hub.invoke(connection_id, frame)
        if completion is not None:
            await self._send_completion(connection_id, completion)

    async def _send_completion(self, connection_id: str, completion: Completion) -> None:
        try:
            await self.connections.send(connection_id, completion)
        except ConnectionClosedError as e:
            logger.warning(f"Dropped completion for {connection_id}: {e}")

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(self, host: Optional[str] = None, port: Optional[int] = None) -> web.AppRunner:
        """Start the server.

        Args:
            host: Host to bind to (defaults to config.bind_address).
            port: Port to bind to, 0 for random (defaults to config.port).

        Returns:
            App runner for cleanup.
        """
        host = host if host is not None else self.config.bind_address
        port = port if port is not None else self.config.port

        self._closing = False
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()

        # Get actual port
        if self._site._server and self._site._server.sockets:
            self._port = self._site._server.sockets[0].getsockname()[1]
        else:
            self._port = port

        logger.info(f"Relay server started on {host}:{self._port}{self.config.hub_path}")
        return self._runner

    def get_port(self) -> int:
        """Get the actual bound port."""
        return self._port

    async def close(self) -> None:
        """Close all connections, stop the server and drop all sessions."""
        self._closing = True
        await self.connections.close_all()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self.registry.clear()
        logger.info("Relay server closed")
