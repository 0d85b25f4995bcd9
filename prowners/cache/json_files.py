"""Directory-tree cache: one JSON envelope file per entry.

Layout under the base directory::

    orgs/<org>/repos.json
    repos/<owner>/<repo>/ownership.json
    repos/<owner>/<repo>/prs/<number>.json
    repos/<owner>/<repo>/prs/<number>_files.json
    repos/<owner>/<repo>/prs/windows.json
    schema_version.json

Each file holds ``{"timestamp": <written_at>, "data": <payload>}`` and is
written to a temporary sibling first, then renamed into place, so readers
never observe a partially written entry.
"""

from __future__ import annotations

import base64
import datetime as dt
import json
import logging
import os
import re
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from prowners.timestamps import in_window, parse_timestamp, pull_request_closed_at

from .base import (
    DEFAULT_TTL,
    CacheError,
    CacheMigrationError,
    Clock,
    Freshness,
    Window,
    decode_written_at,
    encode_written_at,
    window_covered,
)
from .migrations import (
    LEGACY_OWNERSHIP_PATH,
    LEGACY_SCHEMA_VERSION,
    MIGRATION_BATCH_SIZE,
    SCHEMA_VERSION,
    LegacyWindowBlob,
    MigratedRecord,
    batched,
    collect_records,
    collect_windows,
)

logger = logging.getLogger(__name__)

VERSION_FILE = "schema_version.json"
RECORD_FILE_RE = re.compile(r"^(\d+)\.json$")
LEGACY_FILE_GLOB = "*/*/prs/prs_*.json"
LEGACY_OWNERSHIP_GLOB = "*/*/codeowners.json"
WINDOWS_FILE = "windows.json"
LEGACY_NAME_RE = re.compile(r"^prs_(\d{8})_(\d{8})\.json$")


def _window_from_name(name: str) -> Tuple[Optional[dt.datetime], Optional[dt.datetime]]:
    """Read ``prs_YYYYMMDD_YYYYMMDD.json`` as whole UTC days."""
    match = LEGACY_NAME_RE.match(name)
    if not match:
        return None, None
    try:
        start = dt.datetime.strptime(match.group(1), "%Y%m%d").replace(tzinfo=dt.timezone.utc)
        end = dt.datetime.strptime(match.group(2), "%Y%m%d").replace(tzinfo=dt.timezone.utc)
    except ValueError:
        return None, None
    return start, end + dt.timedelta(days=1) - dt.timedelta(microseconds=1)


class JSONFileCache:
    """``Cache`` implementation stored as a tree of JSON files."""

    def __init__(self,
                 base_dir: str | Path,
                 *,
                 ttl: dt.timedelta = DEFAULT_TTL,
                 ignore_ttl: bool = False,
                 clock: Optional[Clock] = None,
                 migration_batch_size: int = MIGRATION_BATCH_SIZE) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.freshness = Freshness(ttl, ignore_ttl, clock)
        self.migration_batch_size = migration_batch_size
        self._lock = threading.RLock()
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheError(f"cannot create cache directory {self.base_dir}: {exc}") from exc
        self.migrate()

    # -- paths ------------------------------------------------------------

    def _repos_path(self, org: str) -> Path:
        return self.base_dir / "orgs" / org / "repos.json"

    def _repo_dir(self, owner: str, repo: str) -> Path:
        return self.base_dir / "repos" / owner / repo

    def _ownership_path(self, owner: str, repo: str) -> Path:
        return self._repo_dir(owner, repo) / "ownership.json"

    def _pr_dir(self, owner: str, repo: str) -> Path:
        return self._repo_dir(owner, repo) / "prs"

    def _pr_path(self, owner: str, repo: str, number: int) -> Path:
        return self._pr_dir(owner, repo) / f"{int(number)}.json"

    def _pr_files_path(self, owner: str, repo: str, number: int) -> Path:
        return self._pr_dir(owner, repo) / f"{int(number)}_files.json"

    def _windows_path(self, owner: str, repo: str) -> Path:
        return self._pr_dir(owner, repo) / WINDOWS_FILE

    @property
    def version_path(self) -> Path:
        return self.base_dir / VERSION_FILE

    # -- envelopes --------------------------------------------------------

    def _write_json(self, path: Path, payload: Any) -> None:
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
            ) as handle:
                tmp_name = handle.name
                json.dump(payload, handle, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CacheError(f"failed to write {path}: {exc}") from exc

    def _write_envelope(self, path: Path, data: Any, written_at: Optional[dt.datetime] = None) -> None:
        stamp = written_at or self.freshness.now()
        self._write_json(path, {"timestamp": encode_written_at(stamp), "data": data})

    @staticmethod
    def _read_envelope(path: Path) -> Optional[Tuple[Optional[dt.datetime], Any]]:
        if not path.is_file():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                envelope = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("[cache] unreadable entry %s: %s", path, exc)
            return None
        if not isinstance(envelope, dict) or "data" not in envelope:
            logger.warning("[cache] malformed entry %s", path)
            return None
        return decode_written_at(envelope.get("timestamp")), envelope["data"]

    def _read_live(self, path: Path) -> Optional[Any]:
        entry = self._read_envelope(path)
        if entry is None:
            return None
        written_at, data = entry
        if not self.freshness.live(written_at):
            return None
        return data

    # -- schema -----------------------------------------------------------

    def schema_version(self) -> int:
        """Stored version; a directory without a stamp is treated as version 1."""
        if not self.version_path.is_file():
            return LEGACY_SCHEMA_VERSION
        try:
            with self.version_path.open("r", encoding="utf-8") as handle:
                return int(json.load(handle).get("version", LEGACY_SCHEMA_VERSION))
        except (OSError, ValueError, AttributeError) as exc:
            raise CacheError(f"unreadable schema version in {self.version_path}: {exc}") from exc

    def _stamp(self, version: int) -> None:
        self._write_json(self.version_path, {"version": version})

    def migrate(self) -> bool:
        """Upgrade to ``SCHEMA_VERSION``; return False when already there."""
        with self._lock:
            version = self.schema_version()
            if version >= SCHEMA_VERSION:
                return False
            logger.info("[cache] migrating %s from schema v%d to v%d", self.base_dir, version, SCHEMA_VERSION)
            try:
                self._migrate_legacy_files()
            except (OSError, ValueError, TypeError, CacheError) as exc:
                raise CacheMigrationError(f"failed to migrate {self.base_dir}: {exc}") from exc
            return True

    def _legacy_files(self, pattern: str) -> List[Path]:
        root = self.base_dir / "repos"
        if not root.is_dir():
            return []
        return sorted(root.glob(pattern))

    @staticmethod
    def _legacy_written_at(path: Path, raw: Any) -> dt.datetime:
        written_at = parse_timestamp(raw) if isinstance(raw, str) else None
        if written_at is None:
            written_at = dt.datetime.fromtimestamp(path.stat().st_mtime, tz=dt.timezone.utc)
        return written_at

    def _load_legacy_blob(self, path: Path) -> LegacyWindowBlob:
        with path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        since = until = stamp = None
        if isinstance(raw, dict):
            since = parse_timestamp(raw.get("since"))
            until = parse_timestamp(raw.get("until"))
            stamp = raw.get("timestamp")
            prs = raw.get("data") or []
        else:
            prs = raw
        if since is None or until is None:
            since, until = _window_from_name(path.name)
        if since is None or until is None:
            logger.warning("[cache] %s has no window; keeping every closed pull request", path)
        repo_dir = path.parent.parent
        return LegacyWindowBlob(
            owner=repo_dir.parent.name,
            repo=repo_dir.name,
            since=since,
            until=until,
            written_at=self._legacy_written_at(path, stamp),
            prs=prs if isinstance(prs, list) else [],
        )

    def _load_legacy_ownership(self, path: Path) -> Optional[Tuple[str, str, str, dt.datetime]]:
        """``(owner, repo, content, written_at)`` of a version-1 ``codeowners.json``."""
        with path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            raise ValueError(f"{path} is not a cache envelope")
        data = raw.get("data")
        # Version 1 serialised the raw bytes, which JSON carries as base64.
        content = base64.b64decode(data, validate=True).decode("utf-8") if data else ""
        if not content:
            return None
        repo_dir = path.parent
        return repo_dir.parent.name, repo_dir.name, content, self._legacy_written_at(path, raw.get("timestamp"))

    def _write_record(self, record: MigratedRecord) -> None:
        path = self._pr_path(record.owner, record.repo, record.number)
        existing = self._read_envelope(path)
        if existing is not None and existing[0] is not None and existing[0] >= record.written_at:
            return
        self._write_envelope(path, record.pr, record.written_at)

    def _write_ownership(self, owner: str, repo: str, content: str, written_at: dt.datetime) -> None:
        path = self._ownership_path(owner, repo)
        existing = self._read_envelope(path)
        if existing is not None and existing[0] is not None and existing[0] >= written_at:
            return
        self._write_envelope(path, {"path": LEGACY_OWNERSHIP_PATH, "content": content}, written_at)

    def _migrate_legacy_files(self) -> None:
        blob_files = self._legacy_files(LEGACY_FILE_GLOB)
        ownership_files = self._legacy_files(LEGACY_OWNERSHIP_GLOB)
        # Everything is decoded before the first write.
        blobs = [self._load_legacy_blob(path) for path in blob_files]
        ownership = [entry for entry in (self._load_legacy_ownership(p) for p in ownership_files) if entry]
        records = collect_records(blobs)
        windows = collect_windows(blobs)
        for batch in batched(records, self.migration_batch_size):
            for record in batch:
                self._write_record(record)
            logger.debug("[cache] migrated %d pull requests", len(batch))
        for window_batch in batched(windows, self.migration_batch_size):
            for window in window_batch:
                self._record_window(window.owner, window.repo, window.since, window.until, window.written_at)
        for owner, repo, content, written_at in ownership:
            self._write_ownership(owner, repo, content, written_at)
        for path in blob_files + ownership_files:
            path.unlink()
        self._stamp(SCHEMA_VERSION)
        logger.info(
            "[cache] migration complete: %d pull requests, %d windows, %d ownership files kept",
            len(records),
            len(windows),
            len(ownership),
        )

    # -- repositories -----------------------------------------------------

    def get_repos(self, org: str) -> Optional[List[Dict[str, Any]]]:
        return self._read_live(self._repos_path(org))

    def set_repos(self, org: str, repos: List[Dict[str, Any]]) -> None:
        self._write_envelope(self._repos_path(org), repos)

    # -- ownership files --------------------------------------------------

    def get_ownership_file(self, owner: str, repo: str) -> Optional[Dict[str, str]]:
        data = self._read_live(self._ownership_path(owner, repo))
        if not isinstance(data, dict):
            return None
        return {"path": data.get("path", ""), "content": data.get("content", "")}

    def set_ownership_file(self, owner: str, repo: str, path: str, content: str) -> None:
        self._write_envelope(self._ownership_path(owner, repo), {"path": path, "content": content})

    # -- pull requests ----------------------------------------------------

    def _window_entries(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        entry = self._read_envelope(self._windows_path(owner, repo))
        if entry is None or not isinstance(entry[1], list):
            return []
        return [item for item in entry[1] if isinstance(item, dict)]

    def _record_window(self,
                       owner: str,
                       repo: str,
                       since: dt.datetime,
                       until: dt.datetime,
                       written_at: dt.datetime) -> None:
        with self._lock:
            kept = []
            for item in self._window_entries(owner, repo):
                start, end = parse_timestamp(item.get("since")), parse_timestamp(item.get("until"))
                stamp = decode_written_at(item.get("written_at"))
                if start is None or end is None:
                    continue
                # Superseded by the new window.
                if since <= start and end <= until and (stamp is None or stamp <= written_at):
                    continue
                kept.append(item)
            kept.append({
                "since": encode_written_at(since),
                "until": encode_written_at(until),
                "written_at": encode_written_at(written_at),
            })
            self._write_envelope(self._windows_path(owner, repo), kept)

    def fetched_windows(self, owner: str, repo: str) -> List[Window]:
        """Live windows already listed for ``owner/repo``."""
        windows = []
        for item in self._window_entries(owner, repo):
            if not self.freshness.live(decode_written_at(item.get("written_at"))):
                continue
            since, until = parse_timestamp(item.get("since")), parse_timestamp(item.get("until"))
            if since is not None and until is not None:
                windows.append((since, until))
        return windows

    def get_pull_requests(self,
                          owner: str,
                          repo: str,
                          since: dt.datetime,
                          until: dt.datetime) -> Optional[List[Dict[str, Any]]]:
        if not window_covered(self.fetched_windows(owner, repo), since, until):
            return None
        pr_dir = self._pr_dir(owner, repo)
        paths = list(pr_dir.iterdir()) if pr_dir.is_dir() else []
        found = []
        for path in paths:
            match = RECORD_FILE_RE.match(path.name)
            if not match:
                continue
            pr = self._read_live(path)
            if not isinstance(pr, dict):
                continue
            if in_window(pull_request_closed_at(pr), since, until):
                found.append((int(match.group(1)), pr))
        found.sort(key=lambda item: item[0])
        return [pr for _, pr in found]

    def set_pull_requests(self,
                          owner: str,
                          repo: str,
                          prs: List[Dict[str, Any]],
                          since: dt.datetime,
                          until: dt.datetime) -> None:
        """Write the records first and the window last, so a covered window never lacks its records."""
        written_at = self.freshness.now()
        for pr in prs:
            if pr.get("number") is None:
                continue
            self._write_envelope(self._pr_path(owner, repo, pr["number"]), pr, written_at)
        self._record_window(owner, repo, since, until, written_at)

    # -- pull request files -----------------------------------------------

    def get_pull_request_files(self,
                               owner: str,
                               repo: str,
                               number: int) -> Optional[List[Dict[str, Any]]]:
        return self._read_live(self._pr_files_path(owner, repo, number))

    def set_pull_request_files(self,
                               owner: str,
                               repo: str,
                               number: int,
                               files: List[Dict[str, Any]]) -> None:
        self._write_envelope(self._pr_files_path(owner, repo, number), files)

    # -- invalidation -----------------------------------------------------

    def invalidate_all(self) -> None:
        with self._lock:
            for name in ("orgs", "repos"):
                target = self.base_dir / name
                if target.exists():
                    try:
                        shutil.rmtree(target)
                    except OSError as exc:
                        raise CacheError(f"failed to invalidate {target}: {exc}") from exc
        logger.info("[cache] invalidated %s", self.base_dir)

    def invalidate_repo(self, owner: str, repo: str) -> None:
        target = self._repo_dir(owner, repo)
        with self._lock:
            if target.exists():
                try:
                    shutil.rmtree(target)
                except OSError as exc:
                    raise CacheError(f"failed to invalidate {owner}/{repo}: {exc}") from exc
        logger.info("[cache] invalidated %s/%s", owner, repo)

    def close(self) -> None:
        """Nothing is held open between calls."""


__all__ = ["JSONFileCache", "VERSION_FILE"]
