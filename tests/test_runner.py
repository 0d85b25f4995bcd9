"""Tests for prowners.pipeline.runner ensuring the CLI maps outcomes to exit codes.

Run with:
    pytest tests/test_runner.py --maxfail=1 -v --cov=prowners.pipeline.runner --cov-report=term-missing
"""

import datetime as dt
import logging
from unittest.mock import patch

import pytest

from prowners.cache import CacheError
from prowners.pipeline import runner
from prowners.pipeline.orchestrator import AnalysisError, AnalysisResult
from prowners.retrieval import CancelledError

REAL_CONFIGURE_LOGGING = runner.configure_logging
ARGS = ["--org", "acme", "--since", "2024-01-01T00:00:00Z", "--until", "2024-01-31T00:00:00Z"]


@pytest.fixture(autouse=True)
def quiet_process(monkeypatch, tmp_path):
    monkeypatch.setenv("GITHUB_TOKEN", "tok")
    monkeypatch.setenv("LOCAL_SECRETS_FILE", str(tmp_path / "absent.json"))
    monkeypatch.chdir(tmp_path)
    with patch("prowners.pipeline.runner.configure_logging"), \
            patch("prowners.pipeline.runner._install_interrupt_handler"):
        yield


def _result():
    return AnalysisResult(
        org="acme",
        since=dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc),
        until=dt.datetime(2024, 1, 31, tzinfo=dt.timezone.utc),
        attribution_mode="multi",
        total_prs_closed=1,
        prs_by_repo={"acme/api": 1},
        prs_by_team={"team1": 1},
        prs_by_user={"alice": 1},
        repo_details={"acme/api": [{"number": 1, "teams": ["team1"]}]},
    )


@patch("prowners.pipeline.runner.analyze")
def test_main_exports_and_prints_summary(mock_analyze, tmp_path, capsys):
    mock_analyze.return_value = _result()
    code = runner.main(ARGS + ["--output-dir", str(tmp_path / "out"), "--output-format", "csv"])

    assert code == 0
    settings = mock_analyze.call_args.args[0]
    assert settings.org == "acme"
    assert (tmp_path / "out" / "prs_by_team.csv").exists()
    assert "Total PRs closed: 1" in capsys.readouterr().out


@patch("prowners.pipeline.runner.analyze")
def test_main_config_error_exits_nonzero(mock_analyze, monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN")
    assert runner.main(ARGS) == 1
    mock_analyze.assert_not_called()


@pytest.mark.parametrize("error", [AnalysisError("organization acme not found"), CacheError("locked")])
def test_main_fatal_errors_exit_nonzero(error):
    with patch("prowners.pipeline.runner.analyze", side_effect=error):
        assert runner.main(ARGS) == 1


@patch("prowners.pipeline.runner.export_result")
@patch("prowners.pipeline.runner.analyze")
def test_main_dry_run_skips_export(mock_analyze, mock_export):
    mock_analyze.return_value = _result()
    assert runner.main(ARGS + ["--dry-run"]) == 0
    assert mock_analyze.call_args.args[0].dry_run is True
    mock_export.assert_not_called()


@patch("prowners.pipeline.runner.export_result", side_effect=OSError("read-only"))
@patch("prowners.pipeline.runner.analyze")
def test_main_export_failure_exits_nonzero(mock_analyze, mock_export):
    mock_analyze.return_value = _result()
    assert runner.main(ARGS) == 1


def test_configure_logging_levels():
    with patch("prowners.pipeline.runner.logging.basicConfig") as basic:
        REAL_CONFIGURE_LOGGING("debug")
        assert basic.call_args.kwargs["level"] == logging.DEBUG
        REAL_CONFIGURE_LOGGING("chatty")
        assert basic.call_args.kwargs["level"] == logging.INFO
        REAL_CONFIGURE_LOGGING(None)
        assert basic.call_args.kwargs["force"] is True


@patch("prowners.pipeline.runner.export_result")
def test_main_interrupted_run_skips_export(mock_export, capsys):
    def interrupted(settings, cancel):
        assert cancel.is_set()
        raise CancelledError("analysis cancelled")

    with patch("prowners.pipeline.runner._install_interrupt_handler", side_effect=lambda cancel: cancel.set()), \
            patch("prowners.pipeline.runner.analyze", side_effect=interrupted):
        assert runner.main(ARGS) == runner.EXIT_CANCELLED

    mock_export.assert_not_called()
    assert capsys.readouterr().out == ""
