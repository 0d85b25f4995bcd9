"""Persistent caches for repositories, ownership files and pull requests."""

from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Optional

from .base import DEFAULT_TTL, Cache, CacheError, CacheMigrationError, Clock, Freshness, is_live, window_covered
from .json_files import JSONFileCache
from .migrations import LEGACY_SCHEMA_VERSION, MIGRATION_BATCH_SIZE, SCHEMA_VERSION
from .sqlite import SQLiteCache

BACKENDS = ("sqlite", "json")


def open_cache(backend: str,
               *,
               sqlite_path: str | Path = "./cache.db",
               json_dir: str | Path = "./cache",
               ttl: dt.timedelta = DEFAULT_TTL,
               ignore_ttl: bool = False,
               clock: Optional[Clock] = None) -> Cache:
    """Open (and upgrade, if needed) the configured backend."""
    name = (backend or "").strip().lower()
    if name == "sqlite":
        return SQLiteCache(sqlite_path, ttl=ttl, ignore_ttl=ignore_ttl, clock=clock)
    if name == "json":
        return JSONFileCache(json_dir, ttl=ttl, ignore_ttl=ignore_ttl, clock=clock)
    raise CacheError(f"unknown cache backend {backend!r}; expected one of {', '.join(BACKENDS)}")


__all__ = [
    "BACKENDS",
    "DEFAULT_TTL",
    "LEGACY_SCHEMA_VERSION",
    "MIGRATION_BATCH_SIZE",
    "SCHEMA_VERSION",
    "Cache",
    "CacheError",
    "CacheMigrationError",
    "Freshness",
    "JSONFileCache",
    "SQLiteCache",
    "is_live",
    "open_cache",
    "window_covered",
]
