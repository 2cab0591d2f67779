"""Base exceptions for hubrelay."""


class RelayError(Exception):
    """Base exception for all hubrelay errors."""

    pass


class SessionIdError(RelayError):
    """Session identifier is empty or otherwise invalid."""

    pass


class GroupNameError(RelayError):
    """Group name is empty or otherwise invalid."""

    pass


class ProtocolError(RelayError):
    """Wire frame could not be decoded.

    invocation_id is set when the frame was recognizably an invocation, so
    the caller can still be answered with an error completion.
    """

    def __init__(self, message: str, invocation_id: str | None = None):
        super().__init__(message)
        self.invocation_id = invocation_id


class ConnectionClosedError(RelayError):
    """Transport connection is unknown or already closed."""

    pass


class InvocationError(RelayError):
    """Hub method invocation failed (bad arguments, unknown target)."""

    pass
