"""Backend-neutral cache contract and entry freshness rules."""

from __future__ import annotations

import datetime as dt
import json
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from prowners.timestamps import parse_timestamp, utcnow

DEFAULT_TTL = dt.timedelta(hours=24)

Clock = Callable[[], dt.datetime]
Window = Tuple[dt.datetime, dt.datetime]

# GitHub timestamps have one-second resolution, so windows this close are contiguous.
WINDOW_JOIN_TOLERANCE = dt.timedelta(seconds=1)


class CacheError(RuntimeError):
    """Raised when a cache backend cannot be opened, read or written."""


class CacheMigrationError(CacheError):
    """Raised when upgrading an on-disk layout fails; the old layout is kept."""


def is_live(written_at: Optional[dt.datetime],
            now: dt.datetime,
            ttl: dt.timedelta,
            ignore_ttl: bool = False) -> bool:
    """An entry is live if TTL is ignored or disabled, or younger than ``ttl``."""
    if written_at is None:
        return False
    if ignore_ttl or ttl <= dt.timedelta(0):
        return True
    return now - written_at < ttl


def window_covered(fetched: Iterable[Window], since: dt.datetime, until: dt.datetime) -> bool:
    """True when the union of ``fetched`` windows spans all of ``[since, until]``.

    A hit on pull requests means the requested window was fully listed by
    earlier runs; records alone cannot tell a quiet period from an unfetched one.
    """
    reached: Optional[dt.datetime] = None
    for start, end in sorted(fetched):
        if end < since:
            continue
        if reached is None:
            if start > since:
                return False
            reached = end
        elif start > reached + WINDOW_JOIN_TOLERANCE:
            return False
        else:
            reached = max(reached, end)
        if reached >= until:
            return True
    return False


def encode_payload(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def decode_payload(raw: str) -> Any:
    return json.loads(raw)


def encode_written_at(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).isoformat()


def decode_written_at(raw: Optional[str]) -> Optional[dt.datetime]:
    return parse_timestamp(raw)


class Freshness:
    """TTL settings plus the clock shared by both backends."""

    def __init__(self,
                 ttl: dt.timedelta = DEFAULT_TTL,
                 ignore_ttl: bool = False,
                 clock: Optional[Clock] = None) -> None:
        self.ttl = ttl
        self.ignore_ttl = ignore_ttl
        self._clock = clock or utcnow

    def now(self) -> dt.datetime:
        return self._clock()

    def live(self, written_at: Optional[dt.datetime]) -> bool:
        return is_live(written_at, self.now(), self.ttl, self.ignore_ttl)


class Cache(Protocol):
    """Operations every backend provides.

    ``get_*`` return ``None`` for entries that are absent or expired; callers
    cannot tell the two apart. ``get_pull_requests`` hits (possibly with an
    empty list) only when live ``set_pull_requests`` windows cover the request.
    """

    def get_repos(self, org: str) -> Optional[List[Dict[str, Any]]]: ...

    def set_repos(self, org: str, repos: List[Dict[str, Any]]) -> None: ...

    def get_ownership_file(self, owner: str, repo: str) -> Optional[Dict[str, str]]: ...

    def set_ownership_file(self, owner: str, repo: str, path: str, content: str) -> None: ...

    def get_pull_requests(self,
                          owner: str,
                          repo: str,
                          since: dt.datetime,
                          until: dt.datetime) -> Optional[List[Dict[str, Any]]]: ...

    def set_pull_requests(self,
                          owner: str,
                          repo: str,
                          prs: List[Dict[str, Any]],
                          since: dt.datetime,
                          until: dt.datetime) -> None: ...

    def get_pull_request_files(self,
                               owner: str,
                               repo: str,
                               number: int) -> Optional[List[Dict[str, Any]]]: ...

    def set_pull_request_files(self,
                               owner: str,
                               repo: str,
                               number: int,
                               files: List[Dict[str, Any]]) -> None: ...

    def invalidate_all(self) -> None: ...

    def invalidate_repo(self, owner: str, repo: str) -> None: ...

    def close(self) -> None: ...


__all__ = [
    "DEFAULT_TTL",
    "Cache",
    "CacheError",
    "CacheMigrationError",
    "Freshness",
    "is_live",
    "window_covered",
    "Window",
    "WINDOW_JOIN_TOLERANCE",
    "encode_payload",
    "decode_payload",
    "encode_written_at",
    "decode_written_at",
]
