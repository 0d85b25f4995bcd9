"""Timestamp helpers shared by the retrieval, cache and pipeline layers."""

from __future__ import annotations

import datetime as dt
import re
from typing import Any, Dict, Optional

# Fractions longer than microseconds (e.g. nanosecond stamps) are truncated.
_LONG_FRACTION_RE = re.compile(r"(\.\d{6})\d+")
_SHORT_FRACTION_RE = re.compile(r"\.(\d{1,5})(?=[+-]|$)")


def utcnow() -> dt.datetime:
    """Return the current time as an aware UTC datetime."""
    return dt.datetime.now(dt.timezone.utc)


def parse_timestamp(raw: Optional[str]) -> Optional[dt.datetime]:
    """Parse GitHub / RFC3339 timestamps into aware UTC datetimes."""
    if not raw:
        return None
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _LONG_FRACTION_RE.sub(r"\1", text)
    text = _SHORT_FRACTION_RE.sub(lambda m: "." + m.group(1).ljust(6, "0"), text)
    try:
        value = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def format_timestamp(value: dt.datetime) -> str:
    """Render an aware datetime the way GitHub does (``YYYY-MM-DDTHH:MM:SSZ``)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def pull_request_closed_at(pr: Dict[str, Any]) -> Optional[dt.datetime]:
    return parse_timestamp(pr.get("closed_at"))


def in_window(value: Optional[dt.datetime], since: dt.datetime, until: dt.datetime) -> bool:
    """Inclusive window check; ``None`` is never inside."""
    if value is None:
        return False
    return since <= value <= until


__all__ = [
    "utcnow",
    "parse_timestamp",
    "format_timestamp",
    "pull_request_closed_at",
    "in_window",
]
