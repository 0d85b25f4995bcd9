"""GitHub retrieval: HTTP client, rate limiting and collectors."""

from .http_client import GitHubAPIError, GitHubClient, GitHubResponse, RateInfo
from .ratelimit import CancelledError, MaxRetriesExceeded, RateLimiter

__all__ = [
    "GitHubAPIError",
    "GitHubClient",
    "GitHubResponse",
    "RateInfo",
    "CancelledError",
    "MaxRetriesExceeded",
    "RateLimiter",
]
