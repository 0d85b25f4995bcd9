"""Schema versions and the shared steps of the window-blob -> per-record upgrade.

Version 1 stored each repository's pull requests as one blob per requested
time window. Version 2 stores one record per pull request so later runs with
overlapping windows reuse them. Upgrading keeps only the pull requests whose
``closed_at`` falls inside the window of the blob they came from; when the
same pull request appears in several blobs the newest copy wins. Each blob's
window is kept as a fetched window so the upgraded store still answers it.
Repository lists, ownership files and changed-file lists keep their payload
and carry the old ``timestamp`` over as ``written_at``.

Both backends drive the upgrade the same way: collect records, write them in
batches of ``MIGRATION_BATCH_SIZE``, remove the old structure, then stamp the
new version. A store already at ``SCHEMA_VERSION`` is left alone.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from prowners.timestamps import in_window, pull_request_closed_at

LEGACY_SCHEMA_VERSION = 1
SCHEMA_VERSION = 2
MIGRATION_BATCH_SIZE = 500

# Version 1 kept only non-empty ownership content; the first lookup location stands in for its path.
LEGACY_OWNERSHIP_PATH = "CODEOWNERS"
# Entries whose version-1 timestamp cannot be read are treated as expired.
LEGACY_UNKNOWN_WRITTEN_AT = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)

T = TypeVar("T")


@dataclass(frozen=True)
class LegacyWindowBlob:
    """One version-1 entry: every pull request fetched for a window."""

    owner: str
    repo: str
    since: Optional[dt.datetime]
    until: Optional[dt.datetime]
    written_at: dt.datetime
    prs: Sequence[Dict[str, Any]]


@dataclass(frozen=True)
class MigratedRecord:
    owner: str
    repo: str
    number: int
    closed_at: Optional[dt.datetime]
    written_at: dt.datetime
    pr: Dict[str, Any]

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.owner, self.repo, self.number)


def records_from_blob(blob: LegacyWindowBlob) -> Iterator[MigratedRecord]:
    """Yield the pull requests of ``blob`` that were closed inside its window."""
    for pr in blob.prs:
        if not isinstance(pr, dict) or pr.get("number") is None:
            continue
        closed_at = pull_request_closed_at(pr)
        if blob.since is not None and blob.until is not None:
            if not in_window(closed_at, blob.since, blob.until):
                continue
        elif closed_at is None:
            continue
        yield MigratedRecord(
            owner=blob.owner,
            repo=blob.repo,
            number=int(pr["number"]),
            closed_at=closed_at,
            written_at=blob.written_at,
            pr=pr,
        )


def collect_records(blobs: Iterable[LegacyWindowBlob]) -> List[MigratedRecord]:
    """Flatten blobs into unique records, keeping the newest copy of each."""
    newest: Dict[Tuple[str, str, int], MigratedRecord] = {}
    for blob in blobs:
        for record in records_from_blob(blob):
            current = newest.get(record.key)
            if current is None or record.written_at > current.written_at:
                newest[record.key] = record
    return sorted(newest.values(), key=lambda record: record.key)


@dataclass(frozen=True)
class MigratedWindow:
    """A window that version 1 had listed completely for one repository."""

    owner: str
    repo: str
    since: dt.datetime
    until: dt.datetime
    written_at: dt.datetime


def collect_windows(blobs: Iterable[LegacyWindowBlob]) -> List[MigratedWindow]:
    """Windows of blobs whose bounds are known; the newest blob per window wins."""
    newest: Dict[Tuple[str, str, dt.datetime, dt.datetime], MigratedWindow] = {}
    for blob in blobs:
        if blob.since is None or blob.until is None:
            continue
        key = (blob.owner, blob.repo, blob.since, blob.until)
        current = newest.get(key)
        if current is None or blob.written_at > current.written_at:
            newest[key] = MigratedWindow(blob.owner, blob.repo, blob.since, blob.until, blob.written_at)
    return sorted(newest.values(), key=lambda window: (window.owner, window.repo, window.since, window.until))


def batched(items: Sequence[T], size: int = MIGRATION_BATCH_SIZE) -> Iterator[Sequence[T]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start:start + size]


__all__ = [
    "LEGACY_SCHEMA_VERSION",
    "SCHEMA_VERSION",
    "MIGRATION_BATCH_SIZE",
    "LEGACY_OWNERSHIP_PATH",
    "LEGACY_UNKNOWN_WRITTEN_AT",
    "LegacyWindowBlob",
    "MigratedRecord",
    "MigratedWindow",
    "collect_windows",
    "records_from_blob",
    "collect_records",
    "batched",
]
