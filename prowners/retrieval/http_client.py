"""Thin GitHub REST client that surfaces quota headers to the rate limiter."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import requests

from .config import BASE_URL, PER_PAGE, REQUEST_TIMEOUT, USER_AGENT

logger = logging.getLogger(__name__)


def _int_header(headers: Mapping[str, str], name: str) -> Optional[int]:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class RateInfo:
    """Quota snapshot reported by a single response."""

    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset: Optional[int] = None  # epoch seconds

    @classmethod
    def from_headers(cls, headers: Optional[Mapping[str, str]]) -> "RateInfo":
        headers = headers or {}
        return cls(
            limit=_int_header(headers, "X-RateLimit-Limit"),
            remaining=_int_header(headers, "X-RateLimit-Remaining"),
            reset=_int_header(headers, "X-RateLimit-Reset"),
        )

    def seconds_until_reset(self, now: Optional[float] = None) -> float:
        """Seconds left before the quota window resets (0 when unknown or past)."""
        if self.reset is None:
            return 0.0
        current = time.time() if now is None else now
        return max(0.0, float(self.reset) - current)


@dataclass
class GitHubResponse:
    """Decoded response plus the pieces the retry and pagination logic need."""

    status_code: int
    payload: Any
    headers: Mapping[str, str] = field(default_factory=dict)
    rate: RateInfo = field(default_factory=RateInfo)
    next_url: Optional[str] = None


class GitHubAPIError(RuntimeError):
    """Raised for non-2xx responses; keeps the response for quota inspection."""

    def __init__(self,
                 message: str,
                 *,
                 status_code: Optional[int] = None,
                 response: Optional[GitHubResponse] = None) -> None:
        self.status_code = status_code
        self.response = response
        super().__init__(message)

    @property
    def rate(self) -> RateInfo:
        return self.response.rate if self.response is not None else RateInfo()

    @property
    def is_quota_exhausted(self) -> bool:
        if self.status_code == 429:
            return True
        return self.status_code == 403 and self.rate.remaining == 0

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = {"text": (resp.text or "")[:300]}
    if not isinstance(body, dict):
        return str(body)[:300]
    return str(body.get("message") or body.get("error") or body.get("text") or "")


def log_http_error(error: GitHubAPIError, url: str) -> None:
    """Log a short, human-readable message when GitHub returns an error."""
    logger.warning("[error] HTTP %s for %s -> %s", error.status_code, url, error)


class GitHubClient:
    """Authenticated session bound to one API base URL."""

    def __init__(self,
                 token: Optional[str],
                 *,
                 base_url: str = BASE_URL,
                 per_page: int = PER_PAGE,
                 timeout: float = REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.per_page = per_page
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "User-Agent": USER_AGENT,
            }
        )
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        path = path if path.startswith("/") else f"/{path}"
        return f"{self.base_url}{path}"

    def request(self,
                method: str,
                path: str,
                params: Optional[Dict[str, Any]] = None) -> GitHubResponse:
        """Issue one request; raise ``GitHubAPIError`` for anything but 2xx."""
        url = self.url(path)
        resp = self.session.request(method, url, params=params, timeout=self.timeout)
        headers = resp.headers or {}
        links = getattr(resp, "links", None) or {}
        next_url = (links.get("next") or {}).get("url")

        if 200 <= resp.status_code < 300:
            try:
                payload = resp.json()
            except ValueError:
                payload = resp.text
            return GitHubResponse(
                status_code=resp.status_code,
                payload=payload,
                headers=headers,
                rate=RateInfo.from_headers(headers),
                next_url=next_url,
            )

        response = GitHubResponse(
            status_code=resp.status_code,
            payload=None,
            headers=headers,
            rate=RateInfo.from_headers(headers),
        )
        raise GitHubAPIError(
            f"HTTP {resp.status_code} for {url}: {_error_message(resp)}",
            status_code=resp.status_code,
            response=response,
        )

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> GitHubResponse:
        return self.request("GET", path, params=params)

    def close(self) -> None:
        self.session.close()


__all__ = [
    "RateInfo",
    "GitHubResponse",
    "GitHubAPIError",
    "GitHubClient",
    "log_http_error",
]
