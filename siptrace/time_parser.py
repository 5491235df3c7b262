from __future__ import annotations

import datetime as dt
import re
import time
from typing import Optional

import dateutil.parser

_DURATION_PATTERN = re.compile(
    r"^\s*(?:(?P<d>\d+)d)?(?:(?P<h>\d+)h)?(?:(?P<m>\d+)m)?(?:(?P<s>\d+)s)?\s*$", re.IGNORECASE
)
_DURATION_UNITS_MS = {
    "d": 24 * 3600 * 1000,
    "h": 3600 * 1000,
    "m": 60 * 1000,
    "s": 1000,
}


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_duration_ms(raw: str | None) -> int:
    """
    Parse a compact duration and return milliseconds.

    Accepted examples: "30m", "1h", "10d", "1d2h30m", "45s".
    Raises ValueError for empty or malformed input.
    """
    text = (raw or "").strip()
    match = _DURATION_PATTERN.match(text)
    if not text or not match or not any(match.groupdict().values()):
        raise ValueError(f"invalid duration: {raw!r}")
    total = 0
    for unit, multiplier in _DURATION_UNITS_MS.items():
        value = match.group(unit)
        if value:
            total += int(value) * multiplier
    return total


def parse_time_value(
    raw: str | None,
    tz: Optional[dt.tzinfo] = None,
    now: Optional[int] = None,
) -> int:
    """
    Parse a point in time and return epoch milliseconds.

    Either an absolute timestamp ("2026-02-04 17:13", "2026-02-04T17:13:00Z")
    or a duration meaning "that long ago" ("2h", "10d"). Timestamps carrying
    an offset use it; naive ones are read in ``tz`` (local time when None).
    Empty input means now.
    """
    current = now_ms() if now is None else now
    text = (raw or "").strip()
    if not text:
        return current

    try:
        parsed = dateutil.parser.isoparse(text)
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is None and tz is not None:
            parsed = parsed.replace(tzinfo=tz)
        return int(parsed.timestamp() * 1000)

    try:
        return current - parse_duration_ms(text)
    except ValueError:
        raise ValueError(
            f"must be a duration (e.g. 1h, 30m, 2d) or timestamp (e.g. 2006-01-02 15:04): {text}"
        ) from None
