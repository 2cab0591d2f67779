"""Formatting utilities for CLI output."""

from datetime import datetime


def format_time_ago(timestamp_str: str | None, now: datetime | None = None) -> str:
    """Format an ISO timestamp as relative time (e.g., '2 hours ago').

    Args:
        timestamp_str: ISO 8601 timestamp as reported by /api/sessions.
        now: Reference time; defaults to the current local time.

    Returns:
        Human-readable relative time like "5 minutes ago", or "Never".
    """
    if not timestamp_str:
        return "Never"

    ts = datetime.fromisoformat(timestamp_str.replace("Z", "+00:00"))
    if now is None:
        now = datetime.now(ts.tzinfo)
    seconds = (now - ts).total_seconds()

    if seconds < 60:
        return "Just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


def format_session_row(session: dict, now: datetime | None = None) -> str:
    """One table row for the `sessions` command."""
    state = "bound" if session.get("bound") else "unbound"
    last_seen = (
        "Now"
        if session.get("bound")
        else format_time_ago(session.get("last_unbound_at"), now)
    )
    return (
        f"{session['session_id']:<40} {state:<8} "
        f"{session.get('history_size', 0):<8} {last_seen}"
    )
