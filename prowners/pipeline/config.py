"""Configuration for the pull request ownership analysis.

Values come from three layers, later ones winning: module defaults (some read
from the environment), a YAML config file, then command-line flags. The
result is one immutable ``AnalysisSettings``.
"""

from __future__ import annotations

import argparse
import datetime as dt
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from prowners.cache import BACKENDS
from prowners.ownership import AttributionMode, RollupConfig
from prowners.retrieval.config import BASE_URL
from prowners.secrets import resolve_github_token
from prowners.timestamps import parse_timestamp

YAML_VERSION = (1, 2)

DEFAULT_CONFIG_PATH = os.getenv("PROWNERS_CONFIG", "config.yaml")
DEFAULT_LOG_LEVEL = os.getenv("PROWNERS_LOG_LEVEL", "info")
DEFAULT_TOKEN_ENV_VAR = "GITHUB_TOKEN"
DEFAULT_QPS = 2.0
DEFAULT_BURST = 20
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_MS = 500
DEFAULT_THRESHOLD = 0
DEFAULT_SLEEP_MINUTES = 60
DEFAULT_CACHE_BACKEND = "sqlite"
DEFAULT_SQLITE_PATH = "./cache.db"
DEFAULT_JSON_DIR = "./cache"
DEFAULT_TTL_MINUTES = 24 * 60
DEFAULT_REPO_WORKERS = int(os.getenv("PROWNERS_REPO_WORKERS", "8"))
DEFAULT_OUTPUT_FORMAT = "json"
DEFAULT_OUTPUT_DIR = "./out"
OUTPUT_FORMATS = ("json", "csv")


class ConfigError(RuntimeError):
    """Raised for configuration problems that must stop the run."""


@dataclass(frozen=True)
class AnalysisSettings:
    """Resolved runtime settings for one analysis run."""

    org: str
    since: dt.datetime
    until: dt.datetime
    token: Optional[str] = None
    base_url: str = BASE_URL
    exclude_authors: Tuple[str, ...] = ()
    exclude_title_prefixes: Tuple[str, ...] = ()
    attribution_mode: AttributionMode = AttributionMode.MULTI
    rollups: Tuple[RollupConfig, ...] = ()
    cache_backend: str = DEFAULT_CACHE_BACKEND
    sqlite_path: Path = Path(DEFAULT_SQLITE_PATH)
    json_dir: Path = Path(DEFAULT_JSON_DIR)
    cache_ttl: dt.timedelta = dt.timedelta(minutes=DEFAULT_TTL_MINUTES)
    qps: float = DEFAULT_QPS
    burst: int = DEFAULT_BURST
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_MS / 1000.0
    threshold: int = DEFAULT_THRESHOLD
    threshold_sleep: float = DEFAULT_SLEEP_MINUTES * 60.0
    repo_workers: int = DEFAULT_REPO_WORKERS
    output_format: str = DEFAULT_OUTPUT_FORMAT
    output_dir: Path = Path(DEFAULT_OUTPUT_DIR)
    log_level: str = DEFAULT_LOG_LEVEL
    skip_api_calls: bool = False
    invalidate_cache: bool = False
    invalidate_repos: Tuple[str, ...] = field(default_factory=tuple)
    dry_run: bool = False

    @property
    def ignore_ttl(self) -> bool:
        """Cache-only runs read whatever is cached, however old."""
        return self.skip_api_calls


def _yaml() -> YAML:
    yaml = YAML(typ="safe")
    yaml.version = YAML_VERSION
    yaml.allow_duplicate_keys = False
    return yaml


def load_config_file(path: Optional[str | Path], *, required: bool = False) -> Dict[str, Any]:
    """Parse the YAML config file; a missing optional file yields ``{}``."""
    if path is None:
        return {}
    path_obj = Path(path).expanduser()
    if not path_obj.exists():
        if required:
            raise ConfigError(f"config file not found: {path_obj}")
        return {}
    try:
        loaded = _yaml().load(path_obj.read_text(encoding="utf-8"))
    except (OSError, YAMLError) as exc:
        raise ConfigError(f"failed to parse {path_obj}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path_obj}: top level must be a mapping")
    return loaded


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"config section '{name}' must be a mapping")
    return value


def _str_list(value: Any, name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise ConfigError(f"'{name}' must be a list")
    return tuple(str(item) for item in value if item is not None and str(item) != "")


def _number(value: Any, name: str, kind: type = int) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{name}' must be a number, got {value!r}") from exc


def _timestamp(value: Any, name: str) -> Optional[dt.datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value if value.tzinfo else value.replace(tzinfo=dt.timezone.utc)
    if isinstance(value, dt.date):
        return dt.datetime(value.year, value.month, value.day, tzinfo=dt.timezone.utc)
    parsed = parse_timestamp(str(value))
    if parsed is None:
        raise ConfigError(f"'{name}' is not an RFC3339 timestamp: {value!r}")
    return parsed


def _rollups(value: Any) -> Tuple[RollupConfig, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError("'team_rollup' must be a list of {name, teams}")
    rollups = []
    for entry in value:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ConfigError(f"team_rollup entry needs a name: {entry!r}")
        rollups.append(
            RollupConfig(name=str(entry["name"]), teams=_str_list(entry.get("teams"), "team_rollup.teams"))
        )
    return tuple(rollups)


def build_arg_parser() -> argparse.ArgumentParser:
    """Return the CLI parser used by the analysis entry point."""

    parser = argparse.ArgumentParser(
        description="Attribute closed pull requests across an organization to code owners.",
    )
    parser.add_argument("--config", default=None, help=f"YAML config file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--org", default=None)
    parser.add_argument("--since", default=None, help="RFC3339 start of the closed-at window")
    parser.add_argument("--until", default=None, help="RFC3339 end of the closed-at window")
    parser.add_argument("--exclude-author", action="append", default=[], dest="exclude_authors")
    parser.add_argument("--exclude-title-prefix", action="append", default=[], dest="exclude_title_prefixes")
    parser.add_argument("--attribution-mode", default=None, choices=[mode.value for mode in AttributionMode])
    parser.add_argument("--output-format", default=None, choices=list(OUTPUT_FORMATS))
    parser.add_argument("--output-dir", default=None)
    parser.add_argument("--skip-api-calls", action="store_true", help="answer from the cache only")
    parser.add_argument("--invalidate-cache", action="store_true")
    parser.add_argument("--invalidate-repo", action="append", default=[], dest="invalidate_repos",
                        metavar="OWNER/NAME")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--log-level", default=None)
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments; accepts argv overrides for testing."""

    parser = build_arg_parser()
    return parser.parse_args(argv)


def _arg(args: Optional[argparse.Namespace], name: str, default: Any = None) -> Any:
    if args is None:
        return default
    return getattr(args, name, default)


def resolve_settings(args: Optional[argparse.Namespace] = None,
                     config: Optional[Dict[str, Any]] = None) -> AnalysisSettings:
    """Merge defaults, the config file and CLI flags; validate the result.

    Raises ``ConfigError`` for a missing organization, window or token and for
    values that cannot be used.
    """
    if config is None:
        config_path = _arg(args, "config")
        config = load_config_file(config_path or DEFAULT_CONFIG_PATH, required=config_path is not None)

    github = _section(config, "github")
    window = _section(config, "time_window")
    filters = _section(config, "filters")
    attribution = _section(config, "attribution")
    cache = _section(config, "cache")
    limiter = _section(config, "rate_limiter")
    retry = limiter.get("retry") or {}
    output = _section(config, "output")
    logging_cfg = _section(config, "logging")
    concurrency = _section(config, "concurrency")

    org = _arg(args, "org") or github.get("org")
    if not org:
        raise ConfigError("organization is required (github.org or --org)")

    since = _timestamp(_arg(args, "since") or window.get("since"), "time_window.since")
    until = _timestamp(_arg(args, "until") or window.get("until"), "time_window.until")
    if since is None or until is None:
        raise ConfigError("time window is required (time_window.since/until or --since/--until)")
    if since > until:
        raise ConfigError(f"time window is empty: since {since.isoformat()} is after until {until.isoformat()}")

    skip_api_calls = bool(_arg(args, "skip_api_calls", False))
    dry_run = bool(_arg(args, "dry_run", False))
    token_env_var = github.get("token_env_var") or DEFAULT_TOKEN_ENV_VAR
    token = resolve_github_token(token_env_var)
    if not token and not (skip_api_calls or dry_run):
        raise ConfigError(f"GitHub token missing: set {token_env_var} or add github_tokens to local_secrets.json")

    backend = str(cache.get("backend") or DEFAULT_CACHE_BACKEND).lower()
    if backend not in BACKENDS:
        raise ConfigError(f"unknown cache backend {backend!r}; expected one of {', '.join(BACKENDS)}")

    output_format = str(_arg(args, "output_format") or output.get("format") or DEFAULT_OUTPUT_FORMAT).lower()
    if output_format not in OUTPUT_FORMATS:
        raise ConfigError(f"unknown output format {output_format!r}")

    repo_workers = _number(concurrency.get("repo_workers", DEFAULT_REPO_WORKERS), "concurrency.repo_workers")
    if repo_workers < 1:
        raise ConfigError("concurrency.repo_workers must be at least 1")

    invalidate_repos = tuple(_arg(args, "invalidate_repos", None) or ())
    for full_name in invalidate_repos:
        if "/" not in full_name:
            raise ConfigError(f"--invalidate-repo expects owner/name, got {full_name!r}")

    return AnalysisSettings(
        org=str(org),
        since=since,
        until=until,
        token=token,
        base_url=str(github.get("base_url") or BASE_URL),
        exclude_authors=_str_list(filters.get("exclude_authors"), "filters.exclude_authors")
        + tuple(_arg(args, "exclude_authors", None) or ()),
        exclude_title_prefixes=_str_list(filters.get("exclude_title_prefixes"), "filters.exclude_title_prefixes")
        + tuple(_arg(args, "exclude_title_prefixes", None) or ()),
        attribution_mode=AttributionMode.parse(_arg(args, "attribution_mode") or attribution.get("mode")),
        rollups=_rollups(config.get("team_rollup")),
        cache_backend=backend,
        sqlite_path=Path(str(cache.get("sqlite_path") or DEFAULT_SQLITE_PATH)),
        json_dir=Path(str(cache.get("json_dir") or DEFAULT_JSON_DIR)),
        cache_ttl=dt.timedelta(minutes=_number(cache.get("ttl_minutes", DEFAULT_TTL_MINUTES), "cache.ttl_minutes")),
        qps=_number(limiter.get("qps", DEFAULT_QPS), "rate_limiter.qps", float),
        burst=_number(limiter.get("burst", DEFAULT_BURST), "rate_limiter.burst"),
        max_attempts=max(1, _number(retry.get("max_attempts", DEFAULT_MAX_ATTEMPTS), "retry.max_attempts")),
        base_delay=_number(retry.get("base_delay_ms", DEFAULT_BASE_DELAY_MS), "retry.base_delay_ms", float) / 1000.0,
        threshold=_number(limiter.get("threshold", DEFAULT_THRESHOLD), "rate_limiter.threshold"),
        threshold_sleep=_number(limiter.get("sleep_minutes", DEFAULT_SLEEP_MINUTES),
                                "rate_limiter.sleep_minutes", float) * 60.0,
        repo_workers=repo_workers,
        output_format=output_format,
        output_dir=Path(str(_arg(args, "output_dir") or output.get("output_dir") or DEFAULT_OUTPUT_DIR)),
        log_level=str(_arg(args, "log_level") or logging_cfg.get("level") or DEFAULT_LOG_LEVEL),
        skip_api_calls=skip_api_calls,
        invalidate_cache=bool(_arg(args, "invalidate_cache", False)),
        invalidate_repos=invalidate_repos,
        dry_run=dry_run,
    )


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_LOG_LEVEL",
    "OUTPUT_FORMATS",
    "AnalysisSettings",
    "ConfigError",
    "build_arg_parser",
    "load_config_file",
    "parse_args",
    "resolve_settings",
]
