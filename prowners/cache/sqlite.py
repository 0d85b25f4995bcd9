"""Single-file cache backed by SQLite through SQLAlchemy Core.

Every statement runs on one pooled connection under one re-entrant lock, so
concurrent workers never interleave writes; each entry write is a single
transaction. Under many workers writes queue on that lock.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import (
    Column,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    delete,
    inspect,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from prowners.timestamps import format_timestamp, in_window, parse_timestamp, pull_request_closed_at

from .base import (
    DEFAULT_TTL,
    CacheError,
    CacheMigrationError,
    Clock,
    Freshness,
    Window,
    decode_payload,
    decode_written_at,
    encode_payload,
    encode_written_at,
    window_covered,
)
from .migrations import (
    LEGACY_OWNERSHIP_PATH,
    LEGACY_SCHEMA_VERSION,
    LEGACY_UNKNOWN_WRITTEN_AT,
    MIGRATION_BATCH_SIZE,
    SCHEMA_VERSION,
    LegacyWindowBlob,
    batched,
    collect_records,
    collect_windows,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

schema_info = Table(
    "schema_info",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("version", Integer, nullable=False),
)

repos_table = Table(
    "repositories",
    metadata,
    Column("org", String, primary_key=True),
    Column("data", Text, nullable=False),
    Column("written_at", String, nullable=False),
)

ownership_files_table = Table(
    "ownership_files",
    metadata,
    Column("owner", String, nullable=False),
    Column("repo", String, nullable=False),
    Column("path", String, nullable=False),
    Column("content", Text, nullable=False),
    Column("written_at", String, nullable=False),
    PrimaryKeyConstraint("owner", "repo"),
)

pull_requests_table = Table(
    "pull_requests",
    metadata,
    Column("owner", String, nullable=False),
    Column("repo", String, nullable=False),
    Column("number", Integer, nullable=False),
    Column("closed_at", String, nullable=True),
    Column("data", Text, nullable=False),
    Column("written_at", String, nullable=False),
    PrimaryKeyConstraint("owner", "repo", "number"),
    Index("ix_pull_requests_closed", "owner", "repo", "closed_at"),
)

# Windows whose closed pull requests were listed completely.
pull_request_windows_table = Table(
    "pull_request_windows",
    metadata,
    Column("owner", String, nullable=False),
    Column("repo", String, nullable=False),
    Column("since", String, nullable=False),
    Column("until", String, nullable=False),
    Column("written_at", String, nullable=False),
    PrimaryKeyConstraint("owner", "repo", "since", "until"),
)

pull_request_files_table = Table(
    "pull_request_files",
    metadata,
    Column("owner", String, nullable=False),
    Column("repo", String, nullable=False),
    Column("number", Integer, nullable=False),
    Column("data", Text, nullable=False),
    Column("written_at", String, nullable=False),
    PrimaryKeyConstraint("owner", "repo", "number"),
)

# Version 1 layout: one blob of pull requests per (repo, window), plus
# repository lists, raw ownership content and changed files keyed by ``timestamp``.
legacy_metadata = MetaData()

legacy_repos_table = Table(
    "repos",
    legacy_metadata,
    Column("org", String, primary_key=True),
    Column("data", LargeBinary, nullable=False),
    Column("timestamp", String, nullable=False),
)

legacy_codeowners_table = Table(
    "codeowners",
    legacy_metadata,
    Column("owner", String, nullable=False),
    Column("repo", String, nullable=False),
    Column("data", LargeBinary, nullable=False),
    Column("timestamp", String, nullable=False),
    PrimaryKeyConstraint("owner", "repo"),
)

legacy_prs_table = Table(
    "prs",
    legacy_metadata,
    Column("owner", String, nullable=False),
    Column("repo", String, nullable=False),
    Column("since", String, nullable=False),
    Column("until", String, nullable=False),
    Column("data", LargeBinary, nullable=False),
    Column("timestamp", String, nullable=False),
    PrimaryKeyConstraint("owner", "repo", "since", "until"),
)

legacy_pr_files_table = Table(
    "pr_files",
    legacy_metadata,
    Column("owner", String, nullable=False),
    Column("repo", String, nullable=False),
    Column("pr_number", Integer, nullable=False),
    Column("data", LargeBinary, nullable=False),
    Column("timestamp", String, nullable=False),
    PrimaryKeyConstraint("owner", "repo", "pr_number"),
)

LEGACY_TABLES = (legacy_repos_table, legacy_codeowners_table, legacy_prs_table, legacy_pr_files_table)

DATA_TABLES = (
    repos_table,
    ownership_files_table,
    pull_requests_table,
    pull_request_windows_table,
    pull_request_files_table,
)
REPO_TABLES = DATA_TABLES[1:]

PRIMARY_KEYS = {
    repos_table.name: ("org",),
    ownership_files_table.name: ("owner", "repo"),
    pull_requests_table.name: ("owner", "repo", "number"),
    pull_request_windows_table.name: ("owner", "repo", "since", "until"),
    pull_request_files_table.name: ("owner", "repo", "number"),
}


def _upsert_statement(table: Table, columns: Sequence[str], newer_only: bool = False):
    """``INSERT .. ON CONFLICT DO UPDATE`` on the table's key; optionally only over older rows."""
    keys = PRIMARY_KEYS[table.name]
    stmt = sqlite_insert(table)
    kwargs: Dict[str, Any] = {}
    if newer_only:
        kwargs["where"] = table.c.written_at < stmt.excluded.written_at
    return stmt.on_conflict_do_update(
        index_elements=list(keys),
        set_={name: stmt.excluded[name] for name in columns if name not in keys},
        **kwargs,
    )


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8")
    return str(value)


class SQLiteCache:
    """``Cache`` implementation stored in one SQLite file."""

    def __init__(self,
                 path: str | Path,
                 *,
                 ttl: dt.timedelta = DEFAULT_TTL,
                 ignore_ttl: bool = False,
                 clock: Optional[Clock] = None,
                 migration_batch_size: int = MIGRATION_BATCH_SIZE) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self.freshness = Freshness(ttl, ignore_ttl, clock)
        self.migration_batch_size = migration_batch_size
        self._lock = threading.RLock()
        self._engine = create_engine(
            f"sqlite:///{self.path}",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        try:
            self._init_schema()
        except CacheError:
            self._engine.dispose()
            raise
        except SQLAlchemyError as exc:
            self._engine.dispose()
            raise CacheError(f"failed to initialise cache at {self.path}: {exc}") from exc

    # -- schema -----------------------------------------------------------

    def _init_schema(self) -> None:
        with self._lock:
            version = self.schema_version()
            if version is None:
                with self._engine.begin() as conn:
                    metadata.create_all(conn)
                    self._stamp(conn, SCHEMA_VERSION)
                return
            self.migrate()
            with self._engine.begin() as conn:
                metadata.create_all(conn)

    def _legacy_tables(self) -> List[Table]:
        names = set(inspect(self._engine).get_table_names())
        return [table for table in LEGACY_TABLES if table.name in names]

    def schema_version(self) -> Optional[int]:
        """Stored version; ``None`` for an empty database."""
        with self._lock:
            names = set(inspect(self._engine).get_table_names())
            if schema_info.name in names:
                with self._engine.connect() as conn:
                    version = conn.execute(select(schema_info.c.version)).scalar()
                if version is not None:
                    return int(version)
            if any(table.name in names for table in LEGACY_TABLES):
                return LEGACY_SCHEMA_VERSION
            return None

    @staticmethod
    def _stamp(conn: Connection, version: int) -> None:
        conn.execute(delete(schema_info))
        conn.execute(schema_info.insert().values(id=1, version=version))

    def migrate(self) -> bool:
        """Upgrade to ``SCHEMA_VERSION``; return False when already there."""
        with self._lock:
            version = self.schema_version()
            if version is None or version >= SCHEMA_VERSION:
                return False
            logger.info("[cache] migrating %s from schema v%d to v%d", self.path, version, SCHEMA_VERSION)
            try:
                self._migrate_legacy_tables()
            except (SQLAlchemyError, ValueError, TypeError) as exc:
                raise CacheMigrationError(f"failed to migrate {self.path}: {exc}") from exc
            return True

    def _legacy_written_at(self, raw: Any) -> str:
        written_at = parse_timestamp(_text(raw)) or LEGACY_UNKNOWN_WRITTEN_AT
        return encode_written_at(written_at)

    def _read_legacy(self, table: Table, present: Sequence[Table]) -> List[Any]:
        if table.name not in {legacy.name for legacy in present}:
            return []
        with self._engine.connect() as conn:
            return list(conn.execute(select(table)).mappings().all())

    def _load_legacy_blobs(self, rows: Sequence[Any]) -> List[LegacyWindowBlob]:
        blobs = []
        for row in rows:
            prs = decode_payload(_text(row["data"])) or []
            blobs.append(
                LegacyWindowBlob(
                    owner=row["owner"],
                    repo=row["repo"],
                    since=parse_timestamp(row["since"]),
                    until=parse_timestamp(row["until"]),
                    written_at=decode_written_at(self._legacy_written_at(row["timestamp"])),
                    prs=prs if isinstance(prs, list) else [],
                )
            )
        return blobs

    def _legacy_rows(self, present: Sequence[Table]) -> List[Tuple[Table, List[Dict[str, Any]]]]:
        """Decode every version-1 entry into version-2 rows before anything is written."""
        repo_rows = [
            {
                "org": row["org"],
                "data": encode_payload(decode_payload(_text(row["data"]))),
                "written_at": self._legacy_written_at(row["timestamp"]),
            }
            for row in self._read_legacy(legacy_repos_table, present)
        ]
        ownership_rows = []
        for row in self._read_legacy(legacy_codeowners_table, present):
            content = _text(row["data"])
            if not content:
                continue
            ownership_rows.append({
                "owner": row["owner"],
                "repo": row["repo"],
                "path": LEGACY_OWNERSHIP_PATH,
                "content": content,
                "written_at": self._legacy_written_at(row["timestamp"]),
            })
        file_rows = [
            {
                "owner": row["owner"],
                "repo": row["repo"],
                "number": int(row["pr_number"]),
                "data": encode_payload(decode_payload(_text(row["data"]))),
                "written_at": self._legacy_written_at(row["timestamp"]),
            }
            for row in self._read_legacy(legacy_pr_files_table, present)
        ]
        blobs = self._load_legacy_blobs(self._read_legacy(legacy_prs_table, present))
        record_rows = [
            {
                "owner": record.owner,
                "repo": record.repo,
                "number": record.number,
                "closed_at": format_timestamp(record.closed_at) if record.closed_at else None,
                "data": encode_payload(record.pr),
                "written_at": encode_written_at(record.written_at),
            }
            for record in collect_records(blobs)
        ]
        window_rows = [
            {
                "owner": window.owner,
                "repo": window.repo,
                "since": encode_written_at(window.since),
                "until": encode_written_at(window.until),
                "written_at": encode_written_at(window.written_at),
            }
            for window in collect_windows(blobs)
        ]
        return [
            (repos_table, repo_rows),
            (ownership_files_table, ownership_rows),
            (pull_requests_table, record_rows),
            (pull_request_windows_table, window_rows),
            (pull_request_files_table, file_rows),
        ]

    def _migrate_legacy_tables(self) -> None:
        present = self._legacy_tables()
        converted = self._legacy_rows(present)
        with self._engine.begin() as conn:
            metadata.create_all(conn)
        for table, rows in converted:
            for batch in batched(rows, self.migration_batch_size):
                with self._engine.begin() as conn:
                    conn.execute(_upsert_statement(table, list(batch[0]), newer_only=True), list(batch))
            if rows:
                logger.debug("[cache] migrated %d rows into %s", len(rows), table.name)
        with self._engine.begin() as conn:
            for table in present:
                table.drop(conn, checkfirst=True)
            self._stamp(conn, SCHEMA_VERSION)
        logger.info(
            "[cache] migration complete: %s",
            ", ".join(f"{len(rows)} {table.name}" for table, rows in converted),
        )

    # -- helpers ----------------------------------------------------------

    def _upsert(self, table: Table, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        try:
            with self._lock, self._engine.begin() as conn:
                conn.execute(_upsert_statement(table, list(rows[0])), rows)
        except SQLAlchemyError as exc:
            raise CacheError(f"failed to write {table.name}: {exc}") from exc

    def _select(self, table: Table, *conditions: Any) -> List[Any]:
        try:
            with self._lock, self._engine.connect() as conn:
                return list(conn.execute(select(table).where(*conditions)).mappings().all())
        except SQLAlchemyError as exc:
            raise CacheError(f"failed to read {table.name}: {exc}") from exc

    def _live_row(self, table: Table, *conditions: Any) -> Optional[Any]:
        rows = self._select(table, *conditions)
        if not rows:
            return None
        row = rows[0]
        if not self.freshness.live(decode_written_at(row["written_at"])):
            return None
        return row

    def _stamp_now(self) -> str:
        return encode_written_at(self.freshness.now())

    # -- repositories -----------------------------------------------------

    def get_repos(self, org: str) -> Optional[List[Dict[str, Any]]]:
        row = self._live_row(repos_table, repos_table.c.org == org)
        return decode_payload(row["data"]) if row is not None else None

    def set_repos(self, org: str, repos: List[Dict[str, Any]]) -> None:
        self._upsert(repos_table, [{"org": org, "data": encode_payload(repos), "written_at": self._stamp_now()}])

    # -- ownership files --------------------------------------------------

    def get_ownership_file(self, owner: str, repo: str) -> Optional[Dict[str, str]]:
        table = ownership_files_table
        row = self._live_row(table, table.c.owner == owner, table.c.repo == repo)
        if row is None:
            return None
        return {"path": row["path"], "content": row["content"]}

    def set_ownership_file(self, owner: str, repo: str, path: str, content: str) -> None:
        self._upsert(
            ownership_files_table,
            [{
                "owner": owner,
                "repo": repo,
                "path": path,
                "content": content,
                "written_at": self._stamp_now(),
            }],
        )

    # -- pull requests ----------------------------------------------------

    def fetched_windows(self, owner: str, repo: str) -> List[Window]:
        """Live windows already listed for ``owner/repo``."""
        table = pull_request_windows_table
        windows = []
        for row in self._select(table, table.c.owner == owner, table.c.repo == repo):
            if not self.freshness.live(decode_written_at(row["written_at"])):
                continue
            since, until = parse_timestamp(row["since"]), parse_timestamp(row["until"])
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
        table = pull_requests_table
        rows = self._select(
            table,
            table.c.owner == owner,
            table.c.repo == repo,
            table.c.closed_at >= format_timestamp(since),
            table.c.closed_at <= format_timestamp(until),
        )
        prs = []
        for row in sorted(rows, key=lambda r: r["number"]):
            if not self.freshness.live(decode_written_at(row["written_at"])):
                continue
            if not in_window(parse_timestamp(row["closed_at"]), since, until):
                continue
            prs.append(decode_payload(row["data"]))
        return prs

    def set_pull_requests(self,
                          owner: str,
                          repo: str,
                          prs: List[Dict[str, Any]],
                          since: dt.datetime,
                          until: dt.datetime) -> None:
        """Store the records and mark ``[since, until]`` as listed, in one transaction."""
        written_at = self._stamp_now()
        rows = []
        for pr in prs:
            if pr.get("number") is None:
                continue
            closed_at = pull_request_closed_at(pr)
            rows.append({
                "owner": owner,
                "repo": repo,
                "number": int(pr["number"]),
                "closed_at": format_timestamp(closed_at) if closed_at else None,
                "data": encode_payload(pr),
                "written_at": written_at,
            })
        window = {
            "owner": owner,
            "repo": repo,
            "since": encode_written_at(since),
            "until": encode_written_at(until),
            "written_at": written_at,
        }
        windows = pull_request_windows_table
        try:
            with self._lock, self._engine.begin() as conn:
                if rows:
                    conn.execute(_upsert_statement(pull_requests_table, list(rows[0])), rows)
                existing = conn.execute(
                    select(windows).where(windows.c.owner == owner, windows.c.repo == repo)
                ).mappings().all()
                for row in existing:
                    start, end = parse_timestamp(row["since"]), parse_timestamp(row["until"])
                    # Superseded by the new window.
                    if start is not None and end is not None and since <= start and end <= until:
                        conn.execute(delete(windows).where(
                            windows.c.owner == owner,
                            windows.c.repo == repo,
                            windows.c.since == row["since"],
                            windows.c.until == row["until"],
                        ))
                conn.execute(_upsert_statement(windows, list(window)), [window])
        except SQLAlchemyError as exc:
            raise CacheError(f"failed to write {pull_requests_table.name}: {exc}") from exc

    # -- pull request files -----------------------------------------------

    def get_pull_request_files(self,
                               owner: str,
                               repo: str,
                               number: int) -> Optional[List[Dict[str, Any]]]:
        table = pull_request_files_table
        row = self._live_row(
            table,
            table.c.owner == owner,
            table.c.repo == repo,
            table.c.number == number,
        )
        return decode_payload(row["data"]) if row is not None else None

    def set_pull_request_files(self,
                               owner: str,
                               repo: str,
                               number: int,
                               files: List[Dict[str, Any]]) -> None:
        self._upsert(
            pull_request_files_table,
            [{
                "owner": owner,
                "repo": repo,
                "number": int(number),
                "data": encode_payload(files),
                "written_at": self._stamp_now(),
            }],
        )

    # -- invalidation -----------------------------------------------------

    def invalidate_all(self) -> None:
        try:
            with self._lock, self._engine.begin() as conn:
                for table in DATA_TABLES:
                    conn.execute(delete(table))
        except SQLAlchemyError as exc:
            raise CacheError(f"failed to invalidate cache: {exc}") from exc
        logger.info("[cache] invalidated %s", self.path)

    def invalidate_repo(self, owner: str, repo: str) -> None:
        try:
            with self._lock, self._engine.begin() as conn:
                for table in REPO_TABLES:
                    conn.execute(delete(table).where(table.c.owner == owner, table.c.repo == repo))
        except SQLAlchemyError as exc:
            raise CacheError(f"failed to invalidate {owner}/{repo}: {exc}") from exc
        logger.info("[cache] invalidated %s/%s", owner, repo)

    def close(self) -> None:
        self._engine.dispose()


__all__ = [
    "SQLiteCache",
    "metadata",
    "legacy_metadata",
    "schema_info",
    "repos_table",
    "ownership_files_table",
    "pull_requests_table",
    "pull_request_windows_table",
    "pull_request_files_table",
    "legacy_repos_table",
    "legacy_codeowners_table",
    "legacy_prs_table",
    "legacy_pr_files_table",
    "LEGACY_TABLES",
]
