"""Bounded message history kept per logical session."""

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable

DEFAULT_MAX_MESSAGES = 50


class MessageRole(Enum):
    """Who produced a history line."""

    ORIGINATOR = "originator"  # the user's own message
    ECHO = "echo"  # the server's acknowledgment


@dataclass(frozen=True)
class MessageRecord:
    """A single history entry. Immutable once created."""

    timestamp: datetime
    role: MessageRole
    text: str

    @property
    def display(self) -> str:
        """Formatted line as shown to the client."""
        clock = self.timestamp.strftime("%H:%M:%S")
        if self.role is MessageRole.ORIGINATOR:
            return f"[{clock}] You: {self.text}"
        return f"[{clock}] Server: Received - {self.text}"


class MessageHistory:
    """Ring buffer of message records.

    Records are kept in arrival order. When more than max_messages are
    held, the oldest are evicted first. Not thread-safe on its own; the
    owning registry serializes access.
    """

    def __init__(self, max_messages: int = DEFAULT_MAX_MESSAGES):
        """Initialize the history.

        Args:
            max_messages: Maximum number of records retained (must be >= 1).
        """
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self._records: deque[MessageRecord] = deque(maxlen=max_messages)

    @property
    def max_messages(self) -> int:
        return self._records.maxlen or 0

    def append(self, record: MessageRecord) -> None:
        """Append a record, evicting the oldest when over capacity."""
        self._records.append(record)

    def extend(self, records: Iterable[MessageRecord]) -> None:
        for record in records:
            self._records.append(record)

    def snapshot(self) -> tuple[MessageRecord, ...]:
        """Copy of all retained records, oldest first."""
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(tuple(self._records))
