"""Fan-out over an organization's repositories and aggregate ownership credits.

Each repository is handled by one task on a bounded thread pool:

    ownership file -> closed pull requests -> filters -> changed files -> credits

Every step reads the cache first and only then calls the API (unless API calls
are disabled). A task never raises; its outcome lands in its own slot of a
pre-sized result list, and aggregation runs afterwards on the calling thread.
A cancelled run raises ``CancelledError`` instead of returning partial totals.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from prowners.cache import Cache, CacheError, open_cache
from prowners.ownership import OwnershipFile, RollupIndex, attribute_pull_request, parse_ownership_file
from prowners.retrieval import CancelledError, GitHubAPIError, GitHubClient, MaxRetriesExceeded, RateLimiter
from prowners.retrieval.collectors import (
    fetch_ownership_file,
    list_closed_pull_requests,
    list_org_repos,
    list_pull_request_files,
    repo_full_name,
    split_full_name,
)
from prowners.timestamps import format_timestamp, utcnow

from .config import AnalysisSettings
from .filters import filter_pull_requests, pull_request_author

logger = logging.getLogger(__name__)

UNKNOWN_AUTHOR = "unknown"


class AnalysisError(RuntimeError):
    """Raised for failures that stop the whole run."""


class CacheOnlyMiss(RuntimeError):
    """A repository needed data that is not cached while API calls are disabled."""

    def __init__(self, repo_name: str, what: str) -> None:
        self.repo_name = repo_name
        self.what = what
        super().__init__(f"cache-only mode: no cached {what} for {repo_name}")


@dataclass
class RepoResult:
    """Outcome of one repository task."""

    repo_name: str
    pull_requests: List[Dict[str, Any]] = field(default_factory=list)
    ownership_file: Optional[OwnershipFile] = None
    # Parallel to ``pull_requests``: the names credited for each one.
    team_credits: List[List[str]] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AnalysisResult:
    org: str
    since: dt.datetime
    until: dt.datetime
    attribution_mode: str
    generated_at: dt.datetime = field(default_factory=utcnow)
    total_prs_closed: int = 0
    prs_by_repo: Dict[str, int] = field(default_factory=dict)
    prs_by_team: Dict[str, int] = field(default_factory=dict)
    prs_by_user: Dict[str, int] = field(default_factory=dict)
    failed_repos: Dict[str, str] = field(default_factory=dict)
    repo_details: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    def to_dict(self, include_details: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "org": self.org,
            "time_window": {
                "since": format_timestamp(self.since),
                "until": format_timestamp(self.until),
            },
            "attribution_mode": self.attribution_mode,
            "generated_at": format_timestamp(self.generated_at),
            "total_prs_closed": self.total_prs_closed,
            "prs_by_repo": dict(self.prs_by_repo),
            "prs_by_team": dict(self.prs_by_team),
            "prs_by_user": dict(self.prs_by_user),
            "failed_repos": dict(self.failed_repos),
        }
        if include_details:
            data["repo_details"] = {name: list(prs) for name, prs in self.repo_details.items()}
        return data


def pull_request_detail(pr: Dict[str, Any], teams: Sequence[str]) -> Dict[str, Any]:
    return {
        "number": pr.get("number"),
        "title": pr.get("title"),
        "author": pull_request_author(pr) or UNKNOWN_AUTHOR,
        "url": pr.get("html_url"),
        "closed_at": pr.get("closed_at"),
        "merged_at": pr.get("merged_at"),
        "teams": list(teams),
    }


def _describe_error(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def _sorted_counts(counts: Dict[str, int]) -> Dict[str, int]:
    return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))


def aggregate(settings: AnalysisSettings, results: Sequence[Optional[RepoResult]]) -> AnalysisResult:
    """Fold per-repository results into totals; failed repositories only land in ``failed_repos``."""
    analysis = AnalysisResult(
        org=settings.org,
        since=settings.since,
        until=settings.until,
        attribution_mode=settings.attribution_mode.value,
    )
    by_team: Dict[str, int] = {}
    by_user: Dict[str, int] = {}
    for result in results:
        if result is None:
            continue
        if result.error is not None:
            analysis.failed_repos[result.repo_name] = _describe_error(result.error)
            continue
        analysis.prs_by_repo[result.repo_name] = len(result.pull_requests)
        analysis.total_prs_closed += len(result.pull_requests)
        details = []
        for pr, teams in zip(result.pull_requests, result.team_credits):
            for team in teams:
                by_team[team] = by_team.get(team, 0) + 1
            author = pull_request_author(pr) or UNKNOWN_AUTHOR
            by_user[author] = by_user.get(author, 0) + 1
            details.append(pull_request_detail(pr, teams))
        analysis.repo_details[result.repo_name] = details
    analysis.prs_by_repo = _sorted_counts(analysis.prs_by_repo)
    analysis.prs_by_team = _sorted_counts(by_team)
    analysis.prs_by_user = _sorted_counts(by_user)
    return analysis


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledError("analysis cancelled")


class Orchestrator:
    """Runs one analysis over shared client, rate limiter and cache instances.

    Collaborators that are not passed in are built from ``settings`` on first
    use and closed by ``close()``.
    """

    def __init__(self,
                 settings: AnalysisSettings,
                 client: Optional[GitHubClient] = None,
                 cache: Optional[Cache] = None,
                 limiter: Optional[RateLimiter] = None) -> None:
        self.settings = settings
        self.rollups = RollupIndex(settings.rollups)
        self._client = client
        self._cache = cache
        self._limiter = limiter
        self._owned: List[Any] = []

    # -- collaborators ----------------------------------------------------

    @property
    def client(self) -> GitHubClient:
        if self._client is None:
            self._client = GitHubClient(self.settings.token, base_url=self.settings.base_url)
            self._owned.append(self._client)
        return self._client

    @property
    def limiter(self) -> RateLimiter:
        if self._limiter is None:
            s = self.settings
            self._limiter = RateLimiter(
                s.qps,
                s.burst,
                max_attempts=s.max_attempts,
                base_delay=s.base_delay,
                threshold=s.threshold,
                threshold_sleep=s.threshold_sleep,
            )
        return self._limiter

    @property
    def cache(self) -> Cache:
        if self._cache is None:
            s = self.settings
            self._cache = open_cache(
                s.cache_backend,
                sqlite_path=s.sqlite_path,
                json_dir=s.json_dir,
                ttl=s.cache_ttl,
                ignore_ttl=s.ignore_ttl,
            )
            self._owned.append(self._cache)
        return self._cache

    def close(self) -> None:
        while self._owned:
            self._owned.pop().close()

    # -- cache access -----------------------------------------------------

    @staticmethod
    def _cache_get(read: Callable[..., Any], *args: Any) -> Any:
        try:
            return read(*args)
        except CacheError as exc:
            logger.warning("[cache] read failed, treating as miss: %s", exc)
            return None

    @staticmethod
    def _cache_set(write: Callable[..., None], *args: Any) -> None:
        try:
            write(*args)
        except CacheError as exc:
            logger.warning("[cache] write failed: %s", exc)

    # -- run --------------------------------------------------------------

    def prepare_cache(self) -> None:
        """Apply the invalidation flags before any lookups."""
        if self.settings.invalidate_cache:
            self.cache.invalidate_all()
        for full_name in self.settings.invalidate_repos:
            owner, repo = split_full_name(full_name)
            self.cache.invalidate_repo(owner, repo)

    def list_repositories(self, cancel: Optional[threading.Event] = None) -> List[str]:
        """Full names of the organization's repositories, cache first."""
        org = self.settings.org
        cached = self._cache_get(self.cache.get_repos, org)
        if cached is not None:
            logger.info("[repos] %s: %d repositories from cache", org, len(cached))
            return [repo_full_name(repo) for repo in cached]
        if self.settings.skip_api_calls:
            raise AnalysisError(f"cache-only mode: no cached repositories for organization {org}")
        try:
            repos = list_org_repos(self.client, self.limiter, org, cancel)
        except GitHubAPIError as exc:
            if exc.is_not_found:
                raise AnalysisError(f"organization {org} not found") from exc
            raise AnalysisError(f"failed to list repositories of {org}: {exc}") from exc
        except MaxRetriesExceeded as exc:
            raise AnalysisError(f"failed to list repositories of {org}: {exc}") from exc
        self._cache_set(self.cache.set_repos, org, repos)
        return [repo_full_name(repo) for repo in repos]

    def _load_ownership(self,
                        owner: str,
                        repo: str,
                        cancel: Optional[threading.Event]) -> Optional[OwnershipFile]:
        cached = self._cache_get(self.cache.get_ownership_file, owner, repo)
        if cached is None:
            if self.settings.skip_api_calls:
                logger.debug("[ownership] %s/%s: not cached; continuing without ownership", owner, repo)
                return None
            cached = fetch_ownership_file(self.client, self.limiter, owner, repo, cancel)
            # An empty path records that the repository has no ownership file.
            cached = cached or {"path": "", "content": ""}
            self._cache_set(self.cache.set_ownership_file, owner, repo, cached["path"], cached["content"])
        if not cached.get("path"):
            return None
        return parse_ownership_file(cached.get("content") or "", cached["path"])

    def _load_pull_requests(self,
                            owner: str,
                            repo: str,
                            cancel: Optional[threading.Event]) -> List[Dict[str, Any]]:
        s = self.settings
        cached = self._cache_get(self.cache.get_pull_requests, owner, repo, s.since, s.until)
        if cached is not None:
            return cached
        if s.skip_api_calls:
            raise CacheOnlyMiss(f"{owner}/{repo}", "pull requests")
        prs = list_closed_pull_requests(self.client, self.limiter, owner, repo, s.since, s.until, cancel)
        self._cache_set(self.cache.set_pull_requests, owner, repo, prs, s.since, s.until)
        return prs

    def _load_changed_files(self,
                            owner: str,
                            repo: str,
                            number: int,
                            cancel: Optional[threading.Event]) -> List[Dict[str, Any]]:
        cached = self._cache_get(self.cache.get_pull_request_files, owner, repo, number)
        if cached is not None:
            return cached
        if self.settings.skip_api_calls:
            raise CacheOnlyMiss(f"{owner}/{repo}", f"changed files of #{number}")
        files = list_pull_request_files(self.client, self.limiter, owner, repo, number, cancel)
        self._cache_set(self.cache.set_pull_request_files, owner, repo, number, files)
        return files

    def process_repository(self,
                           full_name: str,
                           cancel: Optional[threading.Event] = None) -> RepoResult:
        """Run one repository task; failures are recorded on the result."""
        s = self.settings
        owner, repo = split_full_name(full_name)
        result = RepoResult(repo_name=full_name)
        try:
            _check_cancel(cancel)
            ownership = self._load_ownership(owner, repo, cancel)
            prs = filter_pull_requests(
                self._load_pull_requests(owner, repo, cancel),
                s.exclude_authors,
                s.exclude_title_prefixes,
            )
            credits = []
            for pr in prs:
                _check_cancel(cancel)
                files: List[Dict[str, Any]] = []
                if ownership is not None:
                    files = self._load_changed_files(owner, repo, int(pr["number"]), cancel)
                credits.append(attribute_pull_request(ownership, files, s.attribution_mode, self.rollups))
        except Exception as exc:
            result.error = exc
            logger.error("[error] %s: %s", full_name, exc)
            return result
        result.ownership_file = ownership
        result.pull_requests = prs
        result.team_credits = credits
        logger.info("[repo] %s: %d pull requests attributed", full_name, len(prs))
        return result

    def process_repositories(self,
                             repo_names: Sequence[str],
                             cancel: Optional[threading.Event] = None) -> List[Optional[RepoResult]]:
        results: List[Optional[RepoResult]] = [None] * len(repo_names)
        if not repo_names:
            return results

        def run_slot(index: int, full_name: str) -> None:
            results[index] = self.process_repository(full_name, cancel)

        workers = max(1, min(self.settings.repo_workers, len(repo_names)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="prowners-repo") as pool:
            futures = [pool.submit(run_slot, index, name) for index, name in enumerate(repo_names)]
            for future in futures:
                future.result()
        return results

    def run(self, cancel: Optional[threading.Event] = None) -> AnalysisResult:
        s = self.settings
        if s.dry_run:
            logger.info(
                "[dry-run] would analyze %s from %s to %s (%s cache, mode %s)",
                s.org,
                format_timestamp(s.since),
                format_timestamp(s.until),
                s.cache_backend,
                s.attribution_mode.value,
            )
            return aggregate(s, [])
        self.prepare_cache()
        repo_names = self.list_repositories(cancel)
        if not repo_names:
            logger.warning("[repos] %s has no repositories", s.org)
        results = self.process_repositories(repo_names, cancel)
        # Partial results are not reported for an interrupted run.
        _check_cancel(cancel)
        analysis = aggregate(s, results)
        logger.info(
            "[done] %d pull requests across %d repositories (%d failed)",
            analysis.total_prs_closed,
            len(analysis.prs_by_repo),
            len(analysis.failed_repos),
        )
        return analysis


def analyze(settings: AnalysisSettings,
            *,
            client: Optional[GitHubClient] = None,
            cache: Optional[Cache] = None,
            limiter: Optional[RateLimiter] = None,
            cancel: Optional[threading.Event] = None) -> AnalysisResult:
    """Run one analysis and release whatever the run opened."""
    orchestrator = Orchestrator(settings, client=client, cache=cache, limiter=limiter)
    try:
        return orchestrator.run(cancel)
    finally:
        orchestrator.close()


__all__ = [
    "AnalysisError",
    "AnalysisResult",
    "CacheOnlyMiss",
    "Orchestrator",
    "RepoResult",
    "aggregate",
    "analyze",
    "pull_request_detail",
]
