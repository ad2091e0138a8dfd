from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

_FRACTION_RE = re.compile(r"\.(\d+)")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current UTC time in ISO-8601, seconds precision."""
    return utc_now().isoformat(timespec="seconds")


def parse_graph_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an API timestamp such as '2024-05-01T10:00:00Z' or
    '2024-05-01T10:00:00.1234567Z' into an aware UTC datetime.

    Returns None for empty values, unparseable strings and the
    '0001-01-01T00:00:00Z' placeholder used for "never".
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value or "").strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        # fromisoformat() only accepts up to microsecond precision
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    if dt.year <= 1:
        return None
    return dt


def format_day(value: Optional[datetime]) -> str:
    if value is None:
        return "Never"
    return value.strftime("%Y-%m-%d")
