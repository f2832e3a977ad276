from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional

import pytz

_FRACTION_PATTERN = re.compile(r"\.(\d+)")


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp as emitted by the Wacraft API.

    The API serialises up to nanosecond precision with trailing zeros dropped
    (``2024-05-01T12:00:00.1234Z``, ``...00.123456789Z``). Older interpreters'
    ``datetime.fromisoformat`` only accepts 3 or 6 fraction digits, so the
    fraction is padded or truncated to microseconds first.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(float(raw), pytz.UTC)

    text = str(raw).strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_PATTERN.sub(_microseconds, text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def format_local(value: datetime, timezone_name: str, fmt: str = "%d.%m %H:%M %Z") -> str:
    try:
        tz = pytz.timezone(timezone_name)
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC
    return ensure_utc(value).astimezone(tz).strftime(fmt)


def _microseconds(match: "re.Match[str]") -> str:
    return "." + match.group(1)[:6].ljust(6, "0")
