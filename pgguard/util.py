"""Small string and duration helpers shared by alerts, logging and the CLI."""

import re
from datetime import timedelta

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def truncate(text: str, max_len: int) -> str:
    """Shorten text to max_len characters, ending with '...' when cut."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def truncate_query(query: str, max_len: int) -> str:
    """Collapse whitespace in a SQL query, then truncate it."""
    return truncate(" ".join(query.split()), max_len)


def format_duration(duration: timedelta) -> str:
    """Format a duration as '45s', '2m 30s' or '1h 15m'."""
    total = round(duration.total_seconds())
    if total < 60:
        return f"{total}s"
    if total < 3600:
        return f"{total // 60}m {total % 60}s"
    return f"{total // 3600}h {(total // 60) % 60}m"


def parse_duration(value: str | int | float | timedelta) -> timedelta:
    """Parse seconds or a Go-style duration string ('30s', '2m', '1h30m', '500ms').

    Raises:
        ValueError: If the string is not a valid duration.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, int | float):
        return timedelta(seconds=value)

    text = value.strip()
    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass

    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=seconds)
