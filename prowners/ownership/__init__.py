"""Ownership rules: parsing, path matching and attribution."""

from .attribution import (
    NO_OWNERSHIP,
    AttributionMode,
    RollupConfig,
    RollupIndex,
    attribute_pull_request,
)
from .matching import matches_pattern
from .parser import OwnershipFile, OwnershipRule, parse_ownership_file

__all__ = [
    "NO_OWNERSHIP",
    "AttributionMode",
    "RollupConfig",
    "RollupIndex",
    "attribute_pull_request",
    "matches_pattern",
    "OwnershipFile",
    "OwnershipRule",
    "parse_ownership_file",
]
