"""Hub methods callable by clients over the WebSocket.

Each method receives the calling connection ID and the invocation's
positional arguments. Failures become the invocation's error string;
they never close the connection.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional

from hubrelay.connection_manager import ConnectionManager
from hubrelay.errors import InvocationError, RelayError
from hubrelay.protocol import (
    RECEIVE_CONNECTION_ID,
    RECEIVE_USER_SESSION,
    Completion,
    Event,
    Invocation,
)
from hubrelay.router import MessageRouter
from hubrelay.session_registry import SessionRegistry
from hubrelay.validation import parse_group_name, parse_session_id

logger = logging.getLogger(__name__)

# Handler type: async function taking (connection_id, *arguments)
HubMethod = Callable[..., Coroutine[Any, Any, Any]]


def _text(value: Any) -> str:
    if not isinstance(value, str):
        raise InvocationError("Message text must be a string")
    return value


class ChatHub:
    """Dispatch invocations to hub methods by target name."""

    def __init__(
        self,
        registry: SessionRegistry,
        connections: ConnectionManager,
        router: MessageRouter,
        handler_timeout: float = 10.0,
    ):
        """Initialize hub.

        Args:
            registry: Session registry.
            connections: Connection manager (for pushing events).
            router: Message router.
            handler_timeout: Maximum time for one method call (seconds).
        """
        self._registry = registry
        self._connections = connections
        self._router = router
        self._handler_timeout = handler_timeout
        self._methods: dict[str, tuple[HubMethod, int, bool]] = {}

        self.register("SendMessage", self.send_message, 1)
        self.register("GetConnectionId", self.get_connection_id, 0)
        # Replay runs after the rebind; each frame is bounded by send_timeout
        self.register("RegisterUserSession", self.register_user_session, 1, timed=False)
        self.register("SendUserMessage", self.send_user_message, 2)
        self.register("JoinGroup", self.join_group, 1)
        self.register("LeaveGroup", self.leave_group, 1)
        self.register("SendGroupMessage", self.send_group_message, 2)

    def register(
        self, target: str, method: HubMethod, arity: int, timed: bool = True
    ) -> None:
        """Register a hub method under a target name.

        Args:
            target: Name clients invoke.
            method: Async handler taking (connection_id, *arguments).
            arity: Required argument count.
            timed: Whether handler_timeout applies to this method.
        """
        self._methods[target] = (method, arity, timed)
        logger.debug(f"Registered hub method: {target}")

    def get_registered_targets(self) -> list[str]:
        return list(self._methods.keys())

    async def invoke(self, connection_id: str, invocation: Invocation) -> Optional[Completion]:
        """Run an invocation.

        Returns:
            Completion to send back, or None when the invocation carried
            no invocation ID.
        """
        result: Any = None
        error: Optional[str] = None

        entry = self._methods.get(invocation.target)
        if entry is None:
            error = f"Unknown method: {invocation.target}"
            logger.warning(f"{error} (connection={connection_id})")
        else:
            method, arity, timed = entry
            try:
                if len(invocation.arguments) != arity:
                    raise InvocationError(
                        f"{invocation.target} expects {arity} argument(s), "
                        f"got {len(invocation.arguments)}"
                    )
                result = await asyncio.wait_for(
                    method(connection_id, *invocation.arguments),
                    timeout=self._handler_timeout if timed else None,
                )
            except RelayError as e:
                error = str(e)
                logger.warning(
                    f"{invocation.target} rejected (connection={connection_id}): {e}"
                )
            except asyncio.TimeoutError:
                error = f"{invocation.target} timed out"
                logger.error(
                    f"Handler timeout for {invocation.target} "
                    f"(connection={connection_id}, timeout={self._handler_timeout}s)"
                )
            except Exception as e:
                error = f"{invocation.target} failed"
                logger.error(
                    f"Handler error for {invocation.target} (connection={connection_id}): {e}"
                )

        if invocation.invocation_id is None:
            return None
        return Completion(invocation_id=invocation.invocation_id, result=result, error=error)

    # Lifecycle hooks

    async def on_connected(self, connection_id: str) -> None:
        """Tell a new connection its ID."""
        await self._push(connection_id, RECEIVE_CONNECTION_ID, connection_id)

    async def on_disconnected(self, connection_id: str) -> None:
        """Release the session bound to a closed connection; keep its history."""
        self._registry.unbind(connection_id)

    # Hub methods

    async def send_message(self, connection_id: str, text: Any) -> str:
        logger.info(f"SendMessage called. Connection: {connection_id}")
        return await self._router.echo(connection_id, _text(text))

    async def get_connection_id(self, connection_id: str) -> str:
        await self._push(connection_id, RECEIVE_CONNECTION_ID, connection_id)
        return connection_id

    async def register_user_session(self, connection_id: str, raw_session_id: Any) -> dict:
        session_id = parse_session_id(raw_session_id)
        snapshot = self._registry.register_or_rebind(session_id, connection_id)

        await self._push(connection_id, RECEIVE_USER_SESSION, session_id)
        restored = await self._router.replay_history(
            connection_id, session_id, snapshot.history
        )
        return {
            "sessionId": session_id,
            "created": snapshot.created,
            "restored": restored,
        }

    async def send_user_message(
        self, connection_id: str, raw_session_id: Any, text: Any
    ) -> str:
        session_id = parse_session_id(raw_session_id)
        logger.info(
            f"SendUserMessage called. Session: {session_id}, Connection: {connection_id}"
        )
        return await self._router.send_to_session(
            session_id, _text(text), caller=connection_id
        )

    async def join_group(self, connection_id: str, raw_group: Any) -> None:
        await self._router.join_group(connection_id, parse_group_name(raw_group))

    async def leave_group(self, connection_id: str, raw_group: Any) -> None:
        await self._router.leave_group(connection_id, parse_group_name(raw_group))

    async def send_group_message(
        self, connection_id: str, raw_group: Any, text: Any
    ) -> None:
        group = parse_group_name(raw_group)
        await self._router.send_to_group(group, _text(text))

    async def _push(self, connection_id: str, target: str, *arguments: Any) -> None:
        try:
            await self._connections.send(connection_id, Event(target=target, arguments=list(arguments)))
        except RelayError as e:
            logger.warning(f"Failed to push {target} to {connection_id}: {e}")
