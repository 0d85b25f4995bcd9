"""Exclusion filters applied to closed pull requests before attribution."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence


def pull_request_author(pr: Dict[str, Any]) -> str:
    return str((pr.get("user") or {}).get("login") or "")


def is_excluded(pr: Dict[str, Any],
                exclude_authors: Sequence[str] = (),
                exclude_title_prefixes: Sequence[str] = ()) -> bool:
    """Exact author match or case-sensitive title prefix match."""
    if exclude_authors and pull_request_author(pr) in exclude_authors:
        return True
    title = str(pr.get("title") or "")
    return any(prefix and title.startswith(prefix) for prefix in exclude_title_prefixes)


def filter_pull_requests(prs: Iterable[Dict[str, Any]],
                         exclude_authors: Optional[Sequence[str]] = None,
                         exclude_title_prefixes: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
    """Drop excluded pull requests and any without a ``closed_at``."""
    authors = tuple(exclude_authors or ())
    prefixes = tuple(exclude_title_prefixes or ())
    return [
        pr for pr in prs
        if pr.get("closed_at") and not is_excluded(pr, authors, prefixes)
    ]


__all__ = ["pull_request_author", "is_excluded", "filter_pull_requests"]
