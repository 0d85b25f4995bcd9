"""Data collection helpers for repositories, pull requests and ownership files."""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import logging
import threading
from typing import Any, Dict, Iterator, List, Optional

from prowners.timestamps import in_window, parse_timestamp, pull_request_closed_at

from .config import OWNERSHIP_FILE_PATHS
from .http_client import GitHubAPIError, GitHubClient, log_http_error
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)


def repo_full_name(repo: Dict[str, Any]) -> str:
    """Return ``owner/name`` for a repository payload."""
    full = repo.get("full_name")
    if full:
        return str(full)
    owner = (repo.get("owner") or {}).get("login") or ""
    return f"{owner}/{repo.get('name') or ''}"


def split_full_name(full_name: str) -> tuple[str, str]:
    owner, _, name = full_name.partition("/")
    return owner, name


def paged_get(client: GitHubClient,
              limiter: RateLimiter,
              path: str,
              params: Optional[Dict[str, Any]] = None,
              cancel: Optional[threading.Event] = None,
              *,
              max_pages: int = 0) -> Iterator[List[Dict[str, Any]]]:
    """Yield successive pages, following the ``Link: rel="next"`` header.

    Every page goes through ``limiter.with_retry`` so admission, backoff and
    quota pauses apply per request.
    """
    query: Optional[Dict[str, Any]] = dict(params or {})
    query.setdefault("per_page", client.per_page)
    url: Optional[str] = path
    page = 0
    while url:
        page += 1
        if max_pages and page > max_pages:
            break
        current_url, current_query = url, query
        resp = limiter.with_retry(
            lambda: client.get(current_url, params=current_query),
            cancel,
            description=current_url,
        )
        batch = resp.payload
        if not isinstance(batch, list) or not batch:
            break
        yield batch
        url = resp.next_url
        # The next link already carries the query string.
        query = None


def list_org_repos(client: GitHubClient,
                   limiter: RateLimiter,
                   org: str,
                   cancel: Optional[threading.Event] = None) -> List[Dict[str, Any]]:
    """Return every repository of ``org`` (raises ``GitHubAPIError`` on 404)."""
    repos: List[Dict[str, Any]] = []
    for batch in paged_get(client, limiter, f"/orgs/{org}/repos", {"type": "all"}, cancel):
        repos.extend(batch)
        logger.debug("[repos] %s: fetched page (%d so far)", org, len(repos))
    logger.info("[repos] %s: %d repositories", org, len(repos))
    return repos


def list_closed_pull_requests(client: GitHubClient,
                              limiter: RateLimiter,
                              owner: str,
                              repo: str,
                              since: dt.datetime,
                              until: dt.datetime,
                              cancel: Optional[threading.Event] = None) -> List[Dict[str, Any]]:
    """Return closed pull requests whose ``closed_at`` lies inside the window.

    Pages are sorted by ``updated_at`` descending; a pull request cannot be
    closed after its last update, so paging stops at the first entry updated
    before ``since``.
    """
    params = {"state": "closed", "sort": "updated", "direction": "desc"}
    prs: List[Dict[str, Any]] = []
    path = f"/repos/{owner}/{repo}/pulls"
    for batch in paged_get(client, limiter, path, params, cancel):
        reached_start = False
        for pr in batch:
            updated = parse_timestamp(pr.get("updated_at"))
            if updated is not None and updated < since:
                reached_start = True
                break
            if in_window(pull_request_closed_at(pr), since, until):
                prs.append(pr)
        if reached_start:
            break
    logger.info("[prs] %s/%s: %d closed in window", owner, repo, len(prs))
    return prs


def list_pull_request_files(client: GitHubClient,
                            limiter: RateLimiter,
                            owner: str,
                            repo: str,
                            number: int,
                            cancel: Optional[threading.Event] = None) -> List[Dict[str, Any]]:
    """Return the changed-file entries of one pull request."""
    files: List[Dict[str, Any]] = []
    path = f"/repos/{owner}/{repo}/pulls/{number}/files"
    for batch in paged_get(client, limiter, path, None, cancel):
        files.extend(batch)
    return files


def decode_content(payload: Dict[str, Any]) -> Optional[str]:
    """Decode the body of a contents API response (``None`` for non-files)."""
    if not isinstance(payload, dict) or payload.get("type", "file") != "file":
        return None
    raw = payload.get("content")
    if raw is None:
        return None
    if payload.get("encoding", "base64") != "base64":
        return str(raw)
    try:
        return base64.b64decode(raw).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        logger.warning("[warn] undecodable file content: %s", exc)
        return None


def fetch_ownership_file(client: GitHubClient,
                         limiter: RateLimiter,
                         owner: str,
                         repo: str,
                         cancel: Optional[threading.Event] = None) -> Optional[Dict[str, str]]:
    """Look for an ownership file at the well-known paths.

    Returns ``{"path": ..., "content": ...}`` for the first hit, ``None`` when
    the repository has none. Errors other than 404 propagate.
    """
    for candidate in OWNERSHIP_FILE_PATHS:
        try:
            resp = limiter.with_retry(
                lambda: client.get(f"/repos/{owner}/{repo}/contents/{candidate}"),
                cancel,
                description=f"{owner}/{repo}:{candidate}",
            )
        except GitHubAPIError as exc:
            if exc.is_not_found:
                continue
            log_http_error(exc, f"{owner}/{repo}:{candidate}")
            raise
        content = decode_content(resp.payload)
        if content is None:
            continue
        logger.debug("[ownership] %s/%s: found %s", owner, repo, candidate)
        return {"path": candidate, "content": content}
    logger.debug("[ownership] %s/%s: no ownership file", owner, repo)
    return None


__all__ = [
    "repo_full_name",
    "split_full_name",
    "paged_get",
    "list_org_repos",
    "list_closed_pull_requests",
    "list_pull_request_files",
    "decode_content",
    "fetch_ownership_file",
]
