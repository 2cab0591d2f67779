"""Input validation for session and group identifiers."""

import secrets
import string
import time
from typing import Any, NewType

from hubrelay.errors import GroupNameError, SessionIdError

# Validated, non-blank logical session identifier.
SessionId = NewType("SessionId", str)

SESSION_ID_MAX_LENGTH = 128
GROUP_NAME_MAX_LENGTH = 64

_BASE36_ALPHABET = string.digits + string.ascii_lowercase
_RANDOM_PART_LENGTH = 9


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_session_id() -> SessionId:
    """Generate a new logical session ID.

    Returns:
        String like "session_k3j9x0q2m_lx8d2f1c": a random base36 part
        followed by the current time in base36 milliseconds.
    """
    random_part = "".join(
        secrets.choice(_BASE36_ALPHABET) for _ in range(_RANDOM_PART_LENGTH)
    )
    millis = int(time.time() * 1000)
    return SessionId(f"session_{random_part}_{_to_base36(millis)}")


def parse_session_id(value: Any) -> SessionId:
    """Validate a caller-supplied session identifier.

    Surrounding whitespace is stripped.

    Args:
        value: Raw value received from the wire.

    Returns:
        The validated SessionId.

    Raises:
        SessionIdError: If value is not a string, is blank, or is too long.
    """
    if not isinstance(value, str):
        raise SessionIdError("Session ID must be a string")

    stripped = value.strip()
    if not stripped:
        raise SessionIdError("Session ID is required")

    if len(stripped) > SESSION_ID_MAX_LENGTH:
        raise SessionIdError(
            f"Session ID too long (max {SESSION_ID_MAX_LENGTH} characters)"
        )

    return SessionId(stripped)


def parse_group_name(value: Any) -> str:
    """Validate a group name.

    Raises:
        GroupNameError: If value is not a non-blank string of sane length.
    """
    if not isinstance(value, str) or not value.strip():
        raise GroupNameError("Group name is required")

    stripped = value.strip()
    if len(stripped) > GROUP_NAME_MAX_LENGTH:
        raise GroupNameError(
            f"Group name too long (max {GROUP_NAME_MAX_LENGTH} characters)"
        )
    return stripped
