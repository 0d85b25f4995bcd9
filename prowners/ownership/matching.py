"""Path pattern matching for ownership rules (gitignore-flavoured subset)."""

from __future__ import annotations

import posixpath
import re
from functools import lru_cache
from typing import List, Sequence


def normalize_path(path: str) -> str:
    """Return ``path`` as a cleaned, absolute, forward-slash path."""
    cleaned = posixpath.normpath("/" + path.replace("\\", "/").lstrip("/"))
    return "/" + cleaned.lstrip("/")


def normalize_pattern(pattern: str) -> str:
    """Anchor a pattern at the repository root (leading ``/``)."""
    return pattern if pattern.startswith("/") else f"/{pattern}"


@lru_cache(maxsize=4096)
def _segment_regex(segment: str) -> "re.Pattern[str]":
    parts = [re.escape(piece) for piece in segment.split("*")]
    return re.compile("^" + "[^/]*".join(parts) + "$")


@lru_cache(maxsize=1024)
def _glob_regex(pattern: str) -> "re.Pattern[str]":
    """Whole-path regex: ``**`` spans separators, ``*`` does not."""
    out: List[str] = []
    for i, chunk in enumerate(pattern.split("**")):
        if i:
            out.append(".*")
        out.append("[^/]*".join(re.escape(piece) for piece in chunk.split("*")))
    return re.compile("^" + "".join(out) + "$")


def _segment_matches(pattern: str, value: str) -> bool:
    if "*" not in pattern:
        return pattern == value
    return bool(_segment_regex(pattern).match(value))


def _segments_match(patterns: Sequence[str], values: Sequence[str]) -> bool:
    if len(patterns) != len(values):
        return False
    return all(_segment_matches(p, v) for p, v in zip(patterns, values))


def _contains_segments(patterns: Sequence[str], values: Sequence[str], start: int) -> bool:
    width = len(patterns)
    for offset in range(start, len(values) - width + 1):
        if _segments_match(patterns, values[offset:offset + width]):
            return True
    return False


def _split(path: str) -> List[str]:
    return [segment for segment in path.split("/") if segment]


def _match_directory(base: str, target: str) -> bool:
    """``base/`` owns ``base`` itself and everything nested beneath it."""
    if "*" not in base:
        return target == base or target.startswith(base + "/")
    base_parts = _split(base)
    target_parts = _split(target)
    if len(target_parts) < len(base_parts):
        return False
    return _segments_match(base_parts, target_parts[:len(base_parts)])


def _match_double_star(pattern: str, target: str) -> bool:
    pieces = pattern.split("**")
    if len(pieces) != 2:
        return bool(_glob_regex(pattern).match(target))

    # Separators next to ``**`` are optional: ``a/**/b`` also covers ``a/b``.
    prefix = _split(pieces[0].rstrip("/"))
    suffix = _split(pieces[1].lstrip("/"))
    parts = _split(target)
    if len(parts) < len(prefix):
        return False
    if prefix and not _segments_match(prefix, parts[:len(prefix)]):
        return False
    if not suffix:
        return True
    return _contains_segments(suffix, parts, len(prefix))


def _match_single_star(pattern: str, target: str) -> bool:
    if "/" not in pattern:
        # No separator in the body: match the last component at any depth.
        return _segment_matches(pattern, posixpath.basename(target))
    return bool(_glob_regex(pattern).match(target))


def matches_pattern(pattern: str, path: str) -> bool:
    """Return True when ``pattern`` (an ownership rule pattern) covers ``path``."""
    body = pattern.lstrip("/")
    target = normalize_path(path).lstrip("/")

    if body == target:
        return True
    if body.endswith("/"):
        return _match_directory(body.rstrip("/"), target)
    if "**" in body:
        return _match_double_star(body, target)
    if "*" in body:
        return _match_single_star(body, target)
    return target == body or target.startswith(body + "/")


__all__ = ["normalize_path", "normalize_pattern", "matches_pattern"]
