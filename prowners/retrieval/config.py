"""Central constants for talking to the GitHub REST API."""

from __future__ import annotations

import os
from typing import Tuple

USER_AGENT = "prowners-pr-analyzer/1.0"
BASE_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")
PER_PAGE = 100
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "90"))

# Searched in order; the first one present wins.
OWNERSHIP_FILE_PATHS: Tuple[str, ...] = (
    "CODEOWNERS",
    ".github/CODEOWNERS",
    "docs/CODEOWNERS",
)

__all__ = [
    "USER_AGENT",
    "BASE_URL",
    "PER_PAGE",
    "REQUEST_TIMEOUT",
    "OWNERSHIP_FILE_PATHS",
]
