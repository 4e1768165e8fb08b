"""Utility functions for the atd CLI."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any

from trackdown.models import Ticket, UnifiedState
from trackdown.state import get_effective_state


def state_symbol(state: str) -> str:
    """Return a symbol for state display."""
    symbols = {
        UnifiedState.PLANNING: " ",
        UnifiedState.ACTIVE: ">",
        UnifiedState.READY_FOR_ENGINEERING: "e",
        UnifiedState.READY_FOR_QA: "q",
        UnifiedState.READY_FOR_DEPLOYMENT: "d",
        UnifiedState.DONE: "x",
        UnifiedState.COMPLETED: "x",
        UnifiedState.WONT_DO: "-",
        UnifiedState.ARCHIVED: "~",
    }
    return symbols.get(state, "?")


def format_time_ago(dt: datetime) -> str:
    """Format a datetime as a relative time string."""
    now = datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    seconds = int((now - dt).total_seconds())
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    days = hours // 24
    if days < 30:
        return f"{days}d ago"
    months = days // 30
    if months < 12:
        return f"{months}mo ago"
    return f"{days // 365}y ago"


def parse_duration(s: str) -> timedelta | None:
    """Parse a duration like '7d', '12h' or '1d6h'. Returns None if unparsable."""
    if not s:
        return None
    m = re.fullmatch(r"(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?", s.strip())
    if not m or not any(m.groups()):
        return None
    days, hours, minutes, seconds = (int(g) if g else 0 for g in m.groups())
    return timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)


def truncate(s: str, max_len: int = 60) -> str:
    """Truncate a string with ellipsis."""
    if len(s) <= max_len:
        return s
    return s[:max_len - 3] + "..."


def format_ticket_row(ticket: Ticket, long_format: bool = False) -> str:
    """Format a ticket as a single-line row for list display."""
    state = get_effective_state(ticket)
    sym = state_symbol(state)
    age = format_time_ago(ticket.created_date)
    title = truncate(ticket.title, 50)
    if long_format:
        assignee = ticket.assignee or "-"
        return f"[{sym}] {ticket.id:<10} {ticket.priority:<8} {state:<22} {assignee:<15} {title}  ({age})"
    return f"[{sym}] {ticket.id:<10} {ticket.priority:<8} {title}  ({age})"


def ticket_to_dict(ticket: Ticket) -> dict[str, Any]:
    """JSON view of a ticket for --json output."""
    data = ticket.to_frontmatter()
    data["id"] = ticket.id
    data["kind"] = ticket.kind
    data["effective_state"] = get_effective_state(ticket)
    data["file_path"] = ticket.file_path
    return data
