"""Tests for prowners.pipeline.exporters writing JSON, CSV and text reports.

Run with coverage:
    pytest tests/test_exporters.py --maxfail=1 -v --cov=prowners.pipeline.exporters --cov-report=term-missing
"""

import csv
import datetime as dt
import json

import pytest

from prowners.pipeline import exporters
from prowners.pipeline.orchestrator import AnalysisResult


@pytest.fixture
def result():
    return AnalysisResult(
        org="acme",
        since=dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc),
        until=dt.datetime(2024, 1, 31, tzinfo=dt.timezone.utc),
        attribution_mode="multi",
        generated_at=dt.datetime(2024, 2, 1, 8, 30, tzinfo=dt.timezone.utc),
        total_prs_closed=3,
        prs_by_repo={"acme/api": 2, "acme/docs": 1},
        prs_by_team={"team1": 1, "team2": 2},
        prs_by_user={"alice": 2, "bob": 1},
        failed_repos={"acme/broken": "MaxRetriesExceeded: gave up"},
        repo_details={
            "acme/api": [{"number": 1, "teams": ["team2"]}, {"number": 2, "teams": ["team1", "team2"]}],
            "acme/docs": [{"number": 10, "teams": ["no_codeowners"]}],
        },
    )


def test_export_json_writes_summary_and_repo_details(tmp_path, result):
    written = exporters.export_json(result, tmp_path / "out")

    summary = json.loads((tmp_path / "out" / "analysis_results.json").read_text(encoding="utf-8"))
    assert summary["total_prs_closed"] == 3
    assert summary["prs_by_team"] == {"team1": 1, "team2": 2}
    assert summary["failed_repos"] == {"acme/broken": "MaxRetriesExceeded: gave up"}
    assert summary["generated_at"] == "2024-02-01T08:30:00Z"
    assert "repo_details" not in summary

    detail = json.loads((tmp_path / "out" / "repos" / "acme_api.json").read_text(encoding="utf-8"))
    assert detail["repository"] == "acme/api"
    assert [pr["number"] for pr in detail["pull_requests"]] == [1, 2]
    assert len(written) == 3


def test_export_csv_writes_ranked_tables(tmp_path, result):
    exporters.export_csv(result, tmp_path)

    with open(tmp_path / "prs_by_team.csv", encoding="utf-8", newline="") as handle:
        rows = list(csv.reader(handle))
    assert rows == [["Team", "PR Count"], ["team2", "2"], ["team1", "1"]]

    with open(tmp_path / "summary.csv", encoding="utf-8", newline="") as handle:
        summary = dict(csv.reader(handle))
    assert summary["Total PRs Closed"] == "3"
    assert summary["Failed Repos"] == "1"
    assert summary["Time Window Start"] == "2024-01-01T00:00:00Z"

    for name in ("prs_by_repo.csv", "prs_by_user.csv"):
        assert (tmp_path / name).exists()


def test_render_summary_lists_top_entries_and_failures(result):
    text = exporters.render_summary(result, top_n=1)
    assert "Total PRs closed: 3" in text
    assert "team2" in text and "team1" not in text
    assert "alice" in text
    assert "acme/broken: MaxRetriesExceeded: gave up" in text


def test_export_result_dispatches_and_rejects_unknown(tmp_path, result):
    written = exporters.export_result(result, "csv", tmp_path)
    assert {path.name for path in written} == {"summary.csv", "prs_by_team.csv", "prs_by_repo.csv", "prs_by_user.csv"}
    with pytest.raises(ValueError):
        exporters.export_result(result, "xml", tmp_path)
