"""Upgrading window-keyed (v1) caches to per-pull-request (v2) records.

Run with coverage:
    pytest tests/test_cache_migration.py --maxfail=1 -v --cov=prowners.cache --cov-report=term-missing
"""

import base64
import datetime as dt
import json

import pytest
from sqlalchemy import create_engine, func, inspect, select

from prowners.cache import SCHEMA_VERSION, CacheMigrationError, JSONFileCache, SQLiteCache
from prowners.cache.migrations import LegacyWindowBlob, batched, collect_records, collect_windows
from prowners.cache.sqlite import (
    LEGACY_TABLES,
    legacy_codeowners_table,
    legacy_metadata,
    legacy_pr_files_table,
    legacy_prs_table,
    legacy_repos_table,
    pull_requests_table,
)

T0 = dt.datetime(2024, 2, 1, tzinfo=dt.timezone.utc)
SINCE = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
UNTIL = dt.datetime(2024, 1, 31, 23, 59, 59, tzinfo=dt.timezone.utc)

WINDOW_PRS = [
    {"number": 1, "closed_at": "2024-01-05T00:00:00Z", "title": "inside"},
    {"number": 2, "closed_at": "2024-01-30T12:00:00Z", "title": "inside too"},
    {"number": 3, "closed_at": "2023-12-20T00:00:00Z", "title": "outside"},
]


def _clock():
    return T0


def _seed_legacy_sqlite(path, rows):
    engine = create_engine(f"sqlite:///{path}")
    legacy_metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(legacy_prs_table.insert(), rows)
    engine.dispose()


def _legacy_row(prs, timestamp=T0, since="2024-01-01T00:00:00Z", until="2024-01-31T23:59:59Z"):
    return {
        "owner": "o",
        "repo": "r",
        "since": since,
        "until": until,
        "data": json.dumps(prs).encode("utf-8"),
        "timestamp": timestamp.isoformat(),
    }


def _count_records(path):
    engine = create_engine(f"sqlite:///{path}")
    try:
        with engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(pull_requests_table)).scalar()
    finally:
        engine.dispose()


def test_collect_records_keeps_window_and_newest_copy():
    old = LegacyWindowBlob("o", "r", SINCE, UNTIL, T0, [{"number": 1, "closed_at": "2024-01-05T00:00:00Z", "v": 1}])
    new = LegacyWindowBlob("o", "r", SINCE, UNTIL, T0 + dt.timedelta(hours=1),
                           [{"number": 1, "closed_at": "2024-01-05T00:00:00Z", "v": 2}])
    unknown = LegacyWindowBlob("o", "r", None, None, T0, [{"number": 5, "closed_at": None}, {"number": 6,
                               "closed_at": "2020-01-01T00:00:00Z"}, {"title": "no number"}])
    records = collect_records([new, old, unknown])
    assert [record.key for record in records] == [("o", "r", 1), ("o", "r", 6)]
    assert records[0].pr["v"] == 2


def test_batched_splits_sequences():
    assert [list(batch) for batch in batched([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]
    assert list(batched([], 3)) == []


def test_sqlite_migration_keeps_in_window_records(tmp_path):
    path = tmp_path / "cache.db"
    _seed_legacy_sqlite(path, [_legacy_row(WINDOW_PRS)])

    cache = SQLiteCache(path, clock=_clock)
    try:
        assert cache.schema_version() == SCHEMA_VERSION
        assert _count_records(path) == 2
        prs = cache.get_pull_requests("o", "r", SINCE, UNTIL)
        assert [pr["number"] for pr in prs] == [1, 2]
        assert "prs" not in inspect(create_engine(f"sqlite:///{path}")).get_table_names()

        assert cache.migrate() is False
        assert _count_records(path) == 2
    finally:
        cache.close()

    reopened = SQLiteCache(path, clock=_clock)
    try:
        assert reopened.migrate() is False
        assert _count_records(path) == 2
    finally:
        reopened.close()


def test_sqlite_migration_merges_overlapping_windows(tmp_path):
    path = tmp_path / "cache.db"
    newer = [{"number": 1, "closed_at": "2024-01-05T00:00:00Z", "title": "newer"}]
    _seed_legacy_sqlite(path, [
        _legacy_row(WINDOW_PRS),
        _legacy_row(newer, timestamp=T0 + dt.timedelta(minutes=5), since="2024-01-02T00:00:00Z"),
    ])
    cache = SQLiteCache(path, clock=_clock, migration_batch_size=1)
    try:
        prs = cache.get_pull_requests("o", "r", SINCE, UNTIL)
        assert [(pr["number"], pr["title"]) for pr in prs] == [(1, "newer"), (2, "inside too")]
    finally:
        cache.close()


def test_sqlite_migration_failure_leaves_legacy_layout(tmp_path):
    path = tmp_path / "cache.db"
    row = _legacy_row(WINDOW_PRS)
    row["data"] = b"{not json"
    _seed_legacy_sqlite(path, [row])

    with pytest.raises(CacheMigrationError):
        SQLiteCache(path, clock=_clock)

    engine = create_engine(f"sqlite:///{path}")
    try:
        assert "prs" in inspect(engine).get_table_names()
        with engine.connect() as conn:
            assert conn.execute(select(func.count()).select_from(legacy_prs_table)).scalar() == 1
    finally:
        engine.dispose()


def test_fresh_sqlite_store_is_stamped(tmp_path):
    cache = SQLiteCache(tmp_path / "new.db", clock=_clock)
    try:
        assert cache.schema_version() == SCHEMA_VERSION
        assert cache.migrate() is False
    finally:
        cache.close()


def _write_legacy_json(base, name, payload):
    legacy = base / "repos" / "o" / "r" / "prs" / name
    legacy.parent.mkdir(parents=True)
    legacy.write_text(json.dumps(payload), encoding="utf-8")
    return legacy


def test_json_migration_keeps_in_window_records(tmp_path):
    base = tmp_path / "cache"
    legacy = _write_legacy_json(base, "prs_20240101_20240131.json", {
        "timestamp": T0.isoformat(),
        "since": "2024-01-01T00:00:00Z",
        "until": "2024-01-31T23:59:59Z",
        "data": WINDOW_PRS,
    })

    cache = JSONFileCache(base, clock=_clock)
    pr_dir = base / "repos" / "o" / "r" / "prs"
    assert not legacy.exists()
    assert sorted(p.name for p in pr_dir.iterdir()) == ["1.json", "2.json", "windows.json"]
    assert json.loads((base / "schema_version.json").read_text())["version"] == SCHEMA_VERSION
    assert [pr["number"] for pr in cache.get_pull_requests("o", "r", SINCE, UNTIL)] == [1, 2]

    assert cache.migrate() is False
    assert JSONFileCache(base, clock=_clock).migrate() is False
    assert sorted(p.name for p in pr_dir.iterdir()) == ["1.json", "2.json", "windows.json"]


def test_json_migration_reads_window_from_filename(tmp_path):
    base = tmp_path / "cache"
    _write_legacy_json(base, "prs_20240101_20240131.json", WINDOW_PRS)

    JSONFileCache(base, clock=_clock)

    pr_dir = base / "repos" / "o" / "r" / "prs"
    assert sorted(p.name for p in pr_dir.iterdir()) == ["1.json", "2.json", "windows.json"]


def test_json_migration_failure_keeps_version_unstamped(tmp_path):
    base = tmp_path / "cache"
    legacy = _write_legacy_json(base, "prs_20240101_20240131.json", {})
    legacy.write_text("{broken", encoding="utf-8")

    with pytest.raises(CacheMigrationError):
        JSONFileCache(base, clock=_clock)
    assert legacy.exists()
    assert not (base / "schema_version.json").exists()


def test_fresh_json_store_is_stamped(tmp_path):
    cache = JSONFileCache(tmp_path / "empty", clock=_clock)
    assert cache.schema_version() == SCHEMA_VERSION
    assert cache.migrate() is False


def test_collect_windows_keeps_known_bounds_newest_first():
    older = LegacyWindowBlob("o", "r", SINCE, UNTIL, T0, [])
    newer = LegacyWindowBlob("o", "r", SINCE, UNTIL, T0 + dt.timedelta(hours=1), [])
    unknown = LegacyWindowBlob("o", "r", None, None, T0, [])
    windows = collect_windows([older, newer, unknown])
    assert [(w.since, w.until, w.written_at) for w in windows] == [(SINCE, UNTIL, T0 + dt.timedelta(hours=1))]


# Timestamps as the earlier tool stored them: SQLite DATETIME text and RFC3339 with nanoseconds.
GO_SQLITE_STAMP = "2024-01-31 23:30:00.123456789+00:00"
GO_JSON_STAMP = "2024-01-31T23:30:00.123456789Z"


def _seed_full_legacy_sqlite(path):
    engine = create_engine(f"sqlite:///{path}")
    legacy_metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(legacy_repos_table.insert(), [
            {"org": "o", "data": json.dumps([{"full_name": "o/r"}]).encode("utf-8"), "timestamp": GO_SQLITE_STAMP},
        ])
        conn.execute(legacy_codeowners_table.insert(), [
            {"owner": "o", "repo": "r", "data": b"* @o/core\n", "timestamp": GO_SQLITE_STAMP},
            {"owner": "o", "repo": "blank", "data": b"", "timestamp": GO_SQLITE_STAMP},
        ])
        conn.execute(legacy_prs_table.insert(), [_legacy_row(WINDOW_PRS, timestamp=T0 - dt.timedelta(minutes=30))])
        conn.execute(legacy_pr_files_table.insert(), [
            {
                "owner": "o",
                "repo": "r",
                "pr_number": 1,
                "data": json.dumps([{"filename": "src/app.go"}]).encode("utf-8"),
                "timestamp": GO_SQLITE_STAMP,
            },
        ])
    engine.dispose()


def test_sqlite_migration_converts_every_legacy_table(tmp_path):
    path = tmp_path / "cache.db"
    _seed_full_legacy_sqlite(path)

    cache = SQLiteCache(path, clock=_clock)
    try:
        assert cache.schema_version() == SCHEMA_VERSION
        assert cache.get_repos("o") == [{"full_name": "o/r"}]
        assert cache.get_ownership_file("o", "r") == {"path": "CODEOWNERS", "content": "* @o/core\n"}
        assert cache.get_ownership_file("o", "blank") is None
        assert cache.get_pull_request_files("o", "r", 1) == [{"filename": "src/app.go"}]
        assert [pr["number"] for pr in cache.get_pull_requests("o", "r", SINCE, UNTIL)] == [1, 2]

        cache.set_repos("o", [{"full_name": "o/r"}, {"full_name": "o/new"}])
        assert len(cache.get_repos("o")) == 2
    finally:
        cache.close()

    engine = create_engine(f"sqlite:///{path}")
    try:
        names = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    assert names.isdisjoint(table.name for table in LEGACY_TABLES)


def test_sqlite_migration_carries_legacy_timestamps(tmp_path):
    path = tmp_path / "cache.db"
    _seed_full_legacy_sqlite(path)

    cache = SQLiteCache(path, ttl=dt.timedelta(minutes=10), clock=_clock)
    try:
        assert cache.get_pull_request_files("o", "r", 1) is None
        assert cache.get_pull_requests("o", "r", SINCE, UNTIL) is None
    finally:
        cache.close()

    cache_only = SQLiteCache(path, ttl=dt.timedelta(minutes=10), ignore_ttl=True, clock=_clock)
    try:
        assert cache_only.get_repos("o") == [{"full_name": "o/r"}]
        assert cache_only.get_pull_request_files("o", "r", 1) == [{"filename": "src/app.go"}]
    finally:
        cache_only.close()


def _write_envelope(path, data, stamp=GO_JSON_STAMP):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"data": data, "timestamp": stamp}), encoding="utf-8")


def test_json_migration_converts_full_legacy_layout(tmp_path):
    base = tmp_path / "cache"
    repo_dir = base / "repos" / "o" / "r"
    _write_envelope(base / "orgs" / "o" / "repos.json", [{"full_name": "o/r"}])
    _write_envelope(repo_dir / "codeowners.json", base64.b64encode(b"* @o/core\n").decode("ascii"))
    _write_envelope(repo_dir / "prs" / "prs_20240101_20240131.json", WINDOW_PRS)
    _write_envelope(repo_dir / "prs" / "1_files.json", [{"filename": "src/app.go"}])

    cache = JSONFileCache(base, clock=_clock)

    assert cache.schema_version() == SCHEMA_VERSION
    assert not (repo_dir / "codeowners.json").exists()
    assert cache.get_repos("o") == [{"full_name": "o/r"}]
    assert cache.get_ownership_file("o", "r") == {"path": "CODEOWNERS", "content": "* @o/core\n"}
    assert cache.get_pull_request_files("o", "r", 1) == [{"filename": "src/app.go"}]
    assert [pr["number"] for pr in cache.get_pull_requests("o", "r", SINCE, UNTIL)] == [1, 2]

    expired = JSONFileCache(base, ttl=dt.timedelta(minutes=10), clock=_clock)
    assert expired.get_repos("o") is None
    assert expired.get_ownership_file("o", "r") is None


def test_json_migration_rejects_undecodable_ownership_content(tmp_path):
    base = tmp_path / "cache"
    legacy = base / "repos" / "o" / "r" / "codeowners.json"
    _write_envelope(legacy, "not base64!")

    with pytest.raises(CacheMigrationError):
        JSONFileCache(base, clock=_clock)
    assert legacy.exists()
    assert not (base / "schema_version.json").exists()
