"""Writers for analysis results: JSON files, CSV tables and a text summary."""

from __future__ import annotations

import csv
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from prowners.timestamps import format_timestamp

from .orchestrator import AnalysisResult

logger = logging.getLogger(__name__)

SUMMARY_TOP_N = 10


def ensure_dir(path: str | Path) -> None:
    """Create output directories as-needed without raising for existing folders."""
    os.makedirs(path, exist_ok=True)


def save_json(path: str | Path, data: Any) -> None:
    """Write JSON to disk using UTF-8 and deterministic formatting."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def _detail_filename(repo_name: str) -> str:
    return repo_name.replace("/", "_") + ".json"


def export_json(result: AnalysisResult, output_dir: str | Path) -> List[Path]:
    """Write ``analysis_results.json`` plus one ``repos/<owner>_<repo>.json`` per repository."""
    out = Path(output_dir)
    ensure_dir(out / "repos")
    written = [out / "analysis_results.json"]
    save_json(written[0], result.to_dict())
    for repo_name, prs in result.repo_details.items():
        path = out / "repos" / _detail_filename(repo_name)
        save_json(path, {"repository": repo_name, "pull_requests": prs})
        written.append(path)
    logger.info("[export] wrote %d JSON files to %s", len(written), out)
    return written


def _write_csv(path: Path, header: Tuple[str, str], rows: Iterable[Tuple[Any, Any]]) -> None:
    with open(path, "w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        writer.writerow(header)
        for row in rows:
            writer.writerow(row)


def _ranked(counts: Dict[str, int]) -> List[Tuple[str, int]]:
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


def export_csv(result: AnalysisResult, output_dir: str | Path) -> List[Path]:
    """Write ``summary.csv`` and the three ``prs_by_*.csv`` count tables."""
    out = Path(output_dir)
    ensure_dir(out)
    summary = [
        ("Total PRs Closed", result.total_prs_closed),
        ("Total Repos", len(result.prs_by_repo)),
        ("Total Teams", len(result.prs_by_team)),
        ("Total Users", len(result.prs_by_user)),
        ("Failed Repos", len(result.failed_repos)),
        ("Time Window Start", format_timestamp(result.since)),
        ("Time Window End", format_timestamp(result.until)),
        ("Generated At", format_timestamp(result.generated_at)),
    ]
    tables = [
        ("summary.csv", ("Metric", "Value"), summary),
        ("prs_by_team.csv", ("Team", "PR Count"), _ranked(result.prs_by_team)),
        ("prs_by_repo.csv", ("Repository", "PR Count"), _ranked(result.prs_by_repo)),
        ("prs_by_user.csv", ("User", "PR Count"), _ranked(result.prs_by_user)),
    ]
    written = []
    for name, header, rows in tables:
        path = out / name
        _write_csv(path, header, rows)
        written.append(path)
    logger.info("[export] wrote %d CSV files to %s", len(written), out)
    return written


def render_summary(result: AnalysisResult, top_n: int = SUMMARY_TOP_N) -> str:
    lines = [
        f"Pull request ownership for {result.org}",
        f"Window: {format_timestamp(result.since)} .. {format_timestamp(result.until)}",
        f"Attribution mode: {result.attribution_mode}",
        f"Total PRs closed: {result.total_prs_closed}",
        f"Repositories: {len(result.prs_by_repo)}",
    ]
    for title, counts in (("Top teams", result.prs_by_team), ("Top users", result.prs_by_user)):
        ranked = _ranked(counts)[:top_n]
        if not ranked:
            continue
        lines.append("")
        lines.append(f"{title}:")
        width = max(len(name) for name, _ in ranked)
        for name, count in ranked:
            lines.append(f"  {name.ljust(width)}  {count}")
    if result.failed_repos:
        lines.append("")
        lines.append(f"Failed repositories ({len(result.failed_repos)}):")
        for name, error in sorted(result.failed_repos.items()):
            lines.append(f"  {name}: {error}")
    return "\n".join(lines) + "\n"


EXPORTERS = {
    "json": export_json,
    "csv": export_csv,
}


def export_result(result: AnalysisResult, output_format: str, output_dir: str | Path) -> List[Path]:
    try:
        exporter = EXPORTERS[output_format]
    except KeyError:
        raise ValueError(f"unknown output format {output_format!r}") from None
    return exporter(result, output_dir)


__all__ = [
    "ensure_dir",
    "save_json",
    "export_json",
    "export_csv",
    "render_summary",
    "export_result",
]
