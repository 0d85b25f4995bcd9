"""Turn changed files into owner credits: attribution modes and team rollups."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .parser import OwnershipFile

logger = logging.getLogger(__name__)

NO_OWNERSHIP = "no_codeowners"


class AttributionMode(str, Enum):
    MULTI = "multi"
    PRIMARY = "primary"
    FIRST_OWNER_ONLY = "first-owner-only"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AttributionMode":
        """Parse a mode name, falling back to ``multi`` for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls((value or cls.MULTI.value).strip().lower())
        except ValueError:
            logger.warning("[warn] unknown attribution mode %r; using multi", value)
            return cls.MULTI


@dataclass(frozen=True)
class RollupConfig:
    """A named group of teams credited as one."""

    name: str
    teams: Tuple[str, ...] = ()


def normalize_owner(owner: str) -> str:
    owner = owner.strip()
    return owner[1:] if owner.startswith("@") else owner


class RollupIndex:
    """Lookup from team identifier to the rollups containing it."""

    def __init__(self, rollups: Iterable[RollupConfig] = ()) -> None:
        self.rollups: Tuple[RollupConfig, ...] = tuple(rollups)
        self._by_team: Dict[str, List[str]] = {}
        for rollup in self.rollups:
            for team in rollup.teams:
                names = self._by_team.setdefault(self._key(team), [])
                if rollup.name not in names:
                    names.append(rollup.name)

    @staticmethod
    def _key(owner: str) -> str:
        return normalize_owner(owner).lower()

    def rollups_for(self, owner: str) -> Tuple[str, ...]:
        return tuple(self._by_team.get(self._key(owner), ()))

    def __bool__(self) -> bool:
        return bool(self.rollups)


def _file_path(entry: Any) -> str:
    if isinstance(entry, str):
        return entry
    return str(entry.get("filename") or "")


def owners_for_pull_request(ownership_file: Optional[OwnershipFile],
                            changed_files: Iterable[Any]) -> List[str]:
    """Union of owners across changed files.

    Order is first appearance: files in listing order, owners in the order
    the winning rule declares them.
    """
    if ownership_file is None:
        return []
    owners: Dict[str, None] = {}
    for entry in changed_files:
        path = _file_path(entry)
        if not path:
            continue
        for owner in ownership_file.find_owners(path):
            owners.setdefault(owner, None)
    return list(owners)


def apply_attribution_mode(owners: Sequence[str], mode: AttributionMode) -> List[str]:
    if not owners:
        return []
    if mode in (AttributionMode.PRIMARY, AttributionMode.FIRST_OWNER_ONLY):
        return [owners[0]]
    return list(owners)


def credit_teams(owners: Sequence[str], rollups: RollupIndex) -> List[str]:
    """Names credited once each for one pull request.

    Rollup members credit their rollup(s) instead of themselves; an empty
    owner list credits ``NO_OWNERSHIP``.
    """
    credits: Dict[str, None] = {}
    for owner in owners:
        names = rollups.rollups_for(owner)
        if names:
            for name in names:
                credits.setdefault(name, None)
        else:
            normalized = normalize_owner(owner)
            if normalized:
                credits.setdefault(normalized, None)
    if not credits:
        return [NO_OWNERSHIP]
    return list(credits)


def attribute_pull_request(ownership_file: Optional[OwnershipFile],
                           changed_files: Iterable[Any],
                           mode: AttributionMode,
                           rollups: RollupIndex) -> List[str]:
    owners = owners_for_pull_request(ownership_file, changed_files)
    return credit_teams(apply_attribution_mode(owners, mode), rollups)


__all__ = [
    "NO_OWNERSHIP",
    "AttributionMode",
    "RollupConfig",
    "RollupIndex",
    "normalize_owner",
    "owners_for_pull_request",
    "apply_attribution_mode",
    "credit_teams",
    "attribute_pull_request",
]
